import logging

from fastapi.testclient import TestClient

from dirtfree_crm.main import app
from dirtfree_crm.models import Customer
from dirtfree_crm.models_twilio import SmsMessage, SmsOptOut
from dirtfree_crm.routes import twilio as twilio_routes
from tests.conftest import INBOUND_URL, twilio_headers

CUSTOMER_PHONE = "+17135551234"
BUSINESS_PHONE = "+17135550100"


def inbound_params(sid="SM0001", body="Hello", from_phone=CUSTOMER_PHONE, **extra):
    params = {
        "MessageSid": sid,
        "AccountSid": "ACtest",
        "From": from_phone,
        "To": BUSINESS_PHONE,
        "Body": body,
        "NumMedia": "0",
    }
    params.update(extra)
    return params


def post_inbound(client, params, headers=None):
    if headers is None:
        headers = twilio_headers(INBOUND_URL, params)
    return client.post("/api/twilio/inbound", data=params, headers=headers)


def test_invalid_signature_is_rejected_and_nothing_is_logged(client, db):
    params = inbound_params()
    response = post_inbound(client, params, headers={"X-Twilio-Signature": "bm9wZQ=="})

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "unauthorized"
    assert db.query(SmsMessage).count() == 0


def test_missing_signature_is_rejected(client, db):
    response = post_inbound(client, inbound_params(), headers={})
    assert response.status_code == 401
    assert db.query(SmsMessage).count() == 0


def test_signature_from_other_token_is_rejected(client, db):
    params = inbound_params()
    response = post_inbound(
        client, params, headers=twilio_headers(INBOUND_URL, params, token="wrong-token")
    )
    assert response.status_code == 401
    assert db.query(SmsMessage).count() == 0


def test_unset_auth_token_fails_closed(client, db, monkeypatch):
    monkeypatch.setattr(twilio_routes, "TWILIO_AUTH_TOKEN", None)
    response = post_inbound(client, inbound_params())
    assert response.status_code == 401
    assert db.query(SmsMessage).count() == 0


def test_plain_message_is_logged_with_empty_reply(client, db, customer):
    response = post_inbound(client, inbound_params(body="What time are you coming?"))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert "<Response/>" in response.text
    assert "<Message>" not in response.text

    message = db.query(SmsMessage).filter(SmsMessage.sid == "SM0001").one()
    assert message.direction == "inbound"
    assert message.status == "received"
    assert message.from_number == CUSTOMER_PHONE
    assert message.customer_id == customer.id


def test_duplicate_message_sid_is_logged_once_and_not_reprocessed(client, db, customer):
    first = post_inbound(client, inbound_params(sid="SMdup", body="STOP"))
    assert "<Message>" in first.text

    # Customer opts back in through the office before Twilio redelivers the STOP
    db.expire_all()
    db.query(SmsOptOut).delete()
    db.query(Customer).filter(Customer.id == customer.id).update({"sms_notifications": True})
    db.commit()

    second = post_inbound(client, inbound_params(sid="SMdup", body="STOP"))
    assert second.status_code == 200
    assert "<Message>" not in second.text

    db.expire_all()
    assert db.query(SmsMessage).filter(SmsMessage.sid == "SMdup").count() == 1
    assert db.query(SmsOptOut).count() == 0
    assert db.get(Customer, customer.id).sms_notifications is True


def test_stop_opts_out_and_disables_customer_sms(client, db, customer):
    response = post_inbound(client, inbound_params(body="  stop  "))

    assert response.status_code == 200
    assert "<Message>" in response.text
    assert "unsubscribed" in response.text

    db.expire_all()
    opt_out = db.query(SmsOptOut).filter(SmsOptOut.phone_number == CUSTOMER_PHONE).one()
    assert opt_out.is_active is True
    assert opt_out.opted_out_at is not None
    assert opt_out.customer_id == customer.id
    assert db.get(Customer, customer.id).sms_notifications is False


def test_stop_with_trailing_words_still_opts_out(client, db):
    response = post_inbound(client, inbound_params(body="STOP texting me please"))
    assert "<Message>" in response.text
    assert db.query(SmsOptOut).filter(SmsOptOut.is_active.is_(True)).count() == 1


def test_carrier_aliases_opt_out(client, db):
    for index, keyword in enumerate(("STOPALL", "END", "QUIT", "UNSUBSCRIBE", "CANCEL")):
        phone = f"+1713555{2000 + index}"
        post_inbound(client, inbound_params(sid=f"SMalias{index}", body=keyword, from_phone=phone))
    assert db.query(SmsOptOut).filter(SmsOptOut.is_active.is_(True)).count() == 5


def test_words_that_only_start_with_a_keyword_are_not_commands(client, db):
    response = post_inbound(client, inbound_params(body="Stopping by after lunch"))
    assert "<Message>" not in response.text
    assert db.query(SmsOptOut).count() == 0


def test_start_after_stop_opts_back_in(client, db, customer):
    post_inbound(client, inbound_params(sid="SM1", body="STOP"))
    response = post_inbound(client, inbound_params(sid="SM2", body="START"))

    assert "<Message>" in response.text
    assert "resubscribed" in response.text

    db.expire_all()
    opt_out = db.query(SmsOptOut).filter(SmsOptOut.phone_number == CUSTOMER_PHONE).one()
    assert opt_out.is_active is False
    assert opt_out.opted_in_at is not None
    assert db.get(Customer, customer.id).sms_notifications is True


def test_help_replies_without_changing_opt_out_state(client, db, customer):
    response = post_inbound(client, inbound_params(body="help"))

    assert "<Message>" in response.text
    assert "STOP" in response.text
    db.expire_all()
    assert db.query(SmsOptOut).count() == 0
    assert db.get(Customer, customer.id).sms_notifications is True


def test_missing_message_sid_is_a_validation_error(client, db):
    params = inbound_params()
    del params["MessageSid"]
    response = post_inbound(client, params)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_failed"
    assert db.query(SmsMessage).count() == 0


def test_malformed_sender_phone_is_a_validation_error(client, db):
    response = post_inbound(client, inbound_params(from_phone="12345"))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_failed"
    assert db.query(SmsMessage).count() == 0


def test_ten_digit_sender_is_normalized(client, db):
    post_inbound(client, inbound_params(from_phone="7135551234"))
    assert db.query(SmsMessage).one().from_number == CUSTOMER_PHONE


def test_per_phone_rate_limit_returns_429_with_retry_after(client, db, monkeypatch):
    monkeypatch.setattr(twilio_routes, "SMS_INBOUND_RATE_LIMIT_PER_PHONE", 2)

    for index in range(2):
        assert post_inbound(client, inbound_params(sid=f"SMrate{index}")).status_code == 200

    response = post_inbound(client, inbound_params(sid="SMrate-over"))
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0
    assert response.json()["error"]["code"] == "rate_limited"

    # A different sender is unaffected
    other = post_inbound(client, inbound_params(sid="SMother", from_phone="+17135559999"))
    assert other.status_code == 200
    assert db.query(SmsMessage).count() == 3


def test_per_ip_rate_limit_uses_first_forwarded_address(client, db, monkeypatch):
    monkeypatch.setattr(twilio_routes, "SMS_INBOUND_RATE_LIMIT_PER_IP", 2)

    def send(index, forwarded):
        params = inbound_params(sid=f"SMip{index}", from_phone=f"+1713555{3000 + index}")
        headers = twilio_headers(INBOUND_URL, params, **{"X-Forwarded-For": forwarded})
        return post_inbound(client, params, headers=headers)

    assert send(0, "203.0.113.7, 10.0.0.1").status_code == 200
    assert send(1, "203.0.113.7, 10.0.0.2").status_code == 200
    blocked = send(2, "203.0.113.7")
    assert blocked.status_code == 429
    assert "Retry-After" in blocked.headers

    assert send(3, "198.51.100.20").status_code == 200


def test_message_body_is_never_logged(client, caplog):
    secret_body = "my gate code is 4821"
    with caplog.at_level(logging.DEBUG, logger="dirtfree_crm"):
        post_inbound(client, inbound_params(body=secret_body))
        post_inbound(client, inbound_params(sid="SMstop", body="STOP"))

    assert any(record.name.startswith("dirtfree_crm") for record in caplog.records)

    assert secret_body not in caplog.text
    assert CUSTOMER_PHONE not in caplog.text


def test_inbound_outcomes_feed_the_verify_slo(client, fake_redis):
    post_inbound(client, inbound_params(sid="SMslo"))
    post_inbound(client, inbound_params(sid="SMbad"), headers={"X-Twilio-Signature": "bad"})

    def total(outcome):
        return sum(
            int(value)
            for key, value in fake_redis.store.items()
            if key.startswith("slo:sms_inbound_verify:") and key.endswith(f":{outcome}")
        )

    assert total("success") == 1
    assert total("failure") == 1


def test_failed_opt_out_is_applied_when_twilio_retries(db, customer, monkeypatch):
    real_opt_out = twilio_routes.opt_out
    calls = []

    def flaky_opt_out(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return real_opt_out(*args, **kwargs)

    monkeypatch.setattr(twilio_routes, "opt_out", flaky_opt_out)
    params = inbound_params(sid="SMretry", body="STOP")
    # Render the 500 like production instead of re-raising into the test
    client = TestClient(app, raise_server_exceptions=False)

    first = post_inbound(client, params)
    assert first.status_code == 500
    db.expire_all()
    assert db.query(SmsMessage).filter(SmsMessage.sid == "SMretry").count() == 0

    second = post_inbound(client, params)
    assert second.status_code == 200
    assert "unsubscribed" in second.text

    db.expire_all()
    assert db.query(SmsMessage).filter(SmsMessage.sid == "SMretry").count() == 1
    assert db.query(SmsOptOut).filter(SmsOptOut.is_active.is_(True)).count() == 1
    assert db.get(Customer, customer.id).sms_notifications is False
