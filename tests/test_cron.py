from datetime import datetime, timedelta

import pytest

from dirtfree_crm.models import CronJobLog, Customer, Job
from dirtfree_crm.models_twilio import SmsMessage
from dirtfree_crm.routes import cron as cron_routes
from dirtfree_crm.services import twilio_service
from dirtfree_crm.services.opt_out import opt_out
from tests.conftest import CRON_SECRET

CRON_HEADERS = {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def deliveries(monkeypatch):
    sent = []

    async def fake_deliver(to_phone, body):
        sent.append((to_phone, body))
        return {"sid": f"SMrem{len(sent)}", "status": "queued"}

    monkeypatch.setattr(twilio_service, "_deliver", fake_deliver)
    return sent


def add_job(db, customer, hours_ahead, status="scheduled"):
    job = Job(
        customer_id=customer.id,
        scheduled_date=datetime.utcnow() + timedelta(hours=hours_ahead),
        status=status,
    )
    db.add(job)
    db.commit()
    return job.id


def run(client, headers=CRON_HEADERS):
    return client.post("/api/cron/send-reminders", headers=headers)


def test_missing_secret_is_unauthorized(client, deliveries):
    assert run(client, headers={}).status_code == 401
    assert deliveries == []


def test_wrong_secret_is_unauthorized(client, deliveries):
    assert run(client, headers={"Authorization": "Bearer nope"}).status_code == 401
    assert run(client, headers={"Authorization": f"Basic {CRON_SECRET}"}).status_code == 401


def test_unset_secret_rejects_everything(client, monkeypatch, deliveries):
    monkeypatch.setattr(cron_routes, "CRON_SECRET", None)
    assert run(client).status_code == 401


def test_sends_reminders_for_jobs_in_window(client, db, customer, deliveries):
    due = add_job(db, customer, hours_ahead=30)
    add_job(db, customer, hours_ahead=5)
    add_job(db, customer, hours_ahead=72)
    add_job(db, customer, hours_ahead=30, status="cancelled")

    response = run(client)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "success"
    assert data["processed_count"] == 1
    assert data["job_ids"] == [due]
    assert len(deliveries) == 1
    assert deliveries[0][0] == customer.phone_e164
    assert "Reply STOP" in deliveries[0][1]

    db.expire_all()
    assert db.get(Job, due).reminder_sent_at is not None
    message = db.query(SmsMessage).one()
    assert message.message_type == "reminder"
    assert message.job_id == due


def test_rerun_does_not_send_twice(client, db, customer, deliveries):
    add_job(db, customer, hours_ahead=30)

    run(client)
    second = run(client)

    assert second.json()["data"]["processed_count"] == 0
    assert len(deliveries) == 1


def test_opted_out_customers_are_skipped(client, db, customer, deliveries):
    job_id = add_job(db, customer, hours_ahead=30)
    opt_out(db, customer.phone_e164)

    data = run(client).json()["data"]

    assert data["processed_count"] == 0
    assert data["skipped_count"] == 1
    assert deliveries == []
    db.expire_all()
    assert db.get(Job, job_id).reminder_sent_at is None


def test_customers_without_phone_are_skipped(client, db, deliveries):
    customer = Customer(name="No Phone")
    db.add(customer)
    db.commit()
    add_job(db, customer, hours_ahead=30)

    assert run(client).json()["data"]["skipped_count"] == 1
    assert deliveries == []


def test_run_is_recorded(client, db, customer, deliveries):
    add_job(db, customer, hours_ahead=30)
    run(client)

    record = db.query(CronJobLog).one()
    assert record.job_name == "send-reminders"
    assert record.status == "success"
    assert record.processed_count == 1
    assert record.finished_at is not None


def test_provider_failure_counts_as_failed_and_is_retried(client, db, customer, monkeypatch):
    async def failing_deliver(to_phone, body):
        raise twilio_service.TwilioAPIError("Service unavailable", code="20503")

    monkeypatch.setattr(twilio_service, "_deliver", failing_deliver)
    job_id = add_job(db, customer, hours_ahead=30)

    data = run(client).json()["data"]

    assert data["failed_count"] == 1
    db.expire_all()
    assert db.get(Job, job_id).reminder_sent_at is None
