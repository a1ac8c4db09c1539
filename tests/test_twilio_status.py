from dirtfree_crm.models_twilio import SmsMessage
from tests.conftest import STATUS_URL, twilio_headers


def post_status(client, sid, status, **extra):
    params = {"MessageSid": sid, "MessageStatus": status, "AccountSid": "ACtest"}
    params.update(extra)
    return client.post("/api/twilio/status", data=params, headers=twilio_headers(STATUS_URL, params))


def seed_outbound(db, sid="SMout1", status="queued"):
    db.add(
        SmsMessage(
            sid=sid,
            direction="outbound",
            to_number="+17135551234",
            from_number="+17135550100",
            body="Reminder",
            status=status,
        )
    )
    db.commit()


def current_status(db, sid):
    db.expire_all()
    return db.query(SmsMessage).filter(SmsMessage.sid == sid).one().status


def delivery_slo_total(fake_redis, outcome):
    return sum(
        int(value)
        for key, value in fake_redis.store.items()
        if key.startswith("slo:sms_delivery:") and key.endswith(f":{outcome}")
    )


def test_status_callback_updates_known_message(client, db):
    seed_outbound(db)

    response = post_status(client, "SMout1", "sent")

    assert response.status_code == 204
    assert current_status(db, "SMout1") == "sent"


def test_unknown_sid_creates_outbound_row(client, db):
    response = post_status(client, "SMnew", "delivered", To="+17135551234", From="+17135550100")

    assert response.status_code == 204
    message = db.query(SmsMessage).filter(SmsMessage.sid == "SMnew").one()
    assert message.direction == "outbound"
    assert message.status == "delivered"
    assert message.to_number == "+17135551234"


def test_status_never_regresses_from_terminal_state(client, db):
    seed_outbound(db)

    post_status(client, "SMout1", "delivered")
    # Out-of-order and redelivered callbacks
    assert post_status(client, "SMout1", "sent").status_code == 204
    assert post_status(client, "SMout1", "queued").status_code == 204

    assert current_status(db, "SMout1") == "delivered"


def test_sent_then_sending_keeps_sent(client, db):
    seed_outbound(db)
    post_status(client, "SMout1", "sent")
    post_status(client, "SMout1", "sending")
    assert current_status(db, "SMout1") == "sent"


def test_failure_details_are_stored(client, db):
    seed_outbound(db)

    post_status(client, "SMout1", "undelivered", ErrorCode="30003", ErrorMessage="Unreachable")

    db.expire_all()
    message = db.query(SmsMessage).filter(SmsMessage.sid == "SMout1").one()
    assert message.status == "undelivered"
    assert message.error_code == "30003"
    assert message.error_message == "Unreachable"


def test_missing_status_is_a_validation_error(client, db):
    params = {"MessageSid": "SMout1"}
    response = client.post(
        "/api/twilio/status", data=params, headers=twilio_headers(STATUS_URL, params)
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_failed"


def test_invalid_signature_is_rejected(client, db):
    seed_outbound(db)
    response = client.post(
        "/api/twilio/status",
        data={"MessageSid": "SMout1", "MessageStatus": "failed"},
        headers={"X-Twilio-Signature": "forged"},
    )
    assert response.status_code == 401
    assert current_status(db, "SMout1") == "queued"


def test_delivery_outcomes_feed_the_delivery_slo(client, db, fake_redis):
    seed_outbound(db, "SMa")
    seed_outbound(db, "SMb")

    post_status(client, "SMa", "delivered")
    post_status(client, "SMa", "delivered")  # redelivery is not double counted
    post_status(client, "SMb", "failed")

    assert delivery_slo_total(fake_redis, "success") == 1
    assert delivery_slo_total(fake_redis, "failure") == 1


def test_late_failure_does_not_override_delivered(client, db, fake_redis):
    seed_outbound(db)

    post_status(client, "SMout1", "delivered")
    assert post_status(client, "SMout1", "failed", ErrorCode="30008").status_code == 204

    assert current_status(db, "SMout1") == "delivered"
    assert delivery_slo_total(fake_redis, "success") == 1
    assert delivery_slo_total(fake_redis, "failure") == 0


def test_read_receipt_follows_delivered_without_recounting(client, db, fake_redis):
    seed_outbound(db)

    post_status(client, "SMout1", "delivered")
    post_status(client, "SMout1", "read")

    assert current_status(db, "SMout1") == "read"
    assert delivery_slo_total(fake_redis, "success") == 1


def test_failed_then_undelivered_counts_one_failure(client, db, fake_redis):
    seed_outbound(db)

    post_status(client, "SMout1", "failed")
    post_status(client, "SMout1", "undelivered")

    assert current_status(db, "SMout1") == "failed"
    assert delivery_slo_total(fake_redis, "failure") == 1


def test_unknown_sid_numbers_are_normalized(client, db):
    post_status(client, "SMraw", "sent", To="(713) 555-1234", From="+17135550100")

    message = db.query(SmsMessage).filter(SmsMessage.sid == "SMraw").one()
    assert message.to_number == "+17135551234"
    assert message.from_number == "+17135550100"


def test_unparseable_callback_number_is_kept_raw(client, db):
    post_status(client, "SMshort", "sent", To="22395", From="+17135550100")

    message = db.query(SmsMessage).filter(SmsMessage.sid == "SMshort").one()
    assert message.to_number == "22395"
