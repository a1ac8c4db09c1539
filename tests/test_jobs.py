from datetime import datetime, timedelta

import pytest

from dirtfree_crm.models import AuditLog, Job, UserRole
from tests.conftest import auth_headers, make_token


@pytest.fixture
def jobs(db, staff, customer):
    tomorrow = datetime.utcnow().replace(microsecond=0) + timedelta(days=1)
    own = Job(customer_id=customer.id, technician_id=staff["tech_one_id"], scheduled_date=tomorrow)
    other = Job(
        customer_id=customer.id,
        technician_id=staff["tech_two_id"],
        scheduled_date=tomorrow + timedelta(hours=2),
    )
    unassigned = Job(customer_id=customer.id, scheduled_date=tomorrow + timedelta(hours=4))
    db.add_all([own, other, unassigned])
    db.commit()
    return {"own": own.id, "other": other.id, "unassigned": unassigned.id}


def test_technician_lists_only_assigned_jobs(client, jobs):
    response = client.get("/api/jobs", headers=auth_headers("tech-1"))

    assert response.status_code == 200
    assert [job["id"] for job in response.json()["data"]] == [jobs["own"]]


def test_office_staff_see_every_job(client, jobs):
    response = client.get("/api/jobs", headers=auth_headers("dispatch-1"))
    assert len(response.json()["data"]) == 3


def test_technician_cannot_read_someone_elses_job(client, jobs):
    assert client.get(f"/api/jobs/{jobs['own']}", headers=auth_headers("tech-1")).status_code == 200

    response = client.get(f"/api/jobs/{jobs['other']}", headers=auth_headers("tech-1"))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_technician_completes_own_job(client, db, jobs):
    response = client.patch(
        f"/api/jobs/{jobs['own']}/status",
        json={"status": "completed"},
        headers=auth_headers("tech-1"),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["completed_at"] is not None

    audit = db.query(AuditLog).filter(AuditLog.action == "status_change").one()
    assert audit.user_id == "tech-1"
    assert audit.details == {"from": "scheduled", "to": "completed"}


def test_technician_cannot_update_other_jobs(client, db, jobs):
    response = client.patch(
        f"/api/jobs/{jobs['other']}/status",
        json={"status": "cancelled"},
        headers=auth_headers("tech-1"),
    )

    assert response.status_code == 404
    db.expire_all()
    assert db.get(Job, jobs["other"]).status == "scheduled"


def test_cancelling_stamps_cancelled_at(client, jobs):
    response = client.patch(
        f"/api/jobs/{jobs['unassigned']}/status",
        json={"status": "cancelled"},
        headers=auth_headers("dispatch-1"),
    )
    assert response.json()["data"]["cancelled_at"] is not None


def test_unknown_status_is_rejected(client, jobs):
    response = client.patch(
        f"/api/jobs/{jobs['own']}/status",
        json={"status": "teleported"},
        headers=auth_headers("dispatch-1"),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_failed"

    listing = client.get("/api/jobs", params={"status": "teleported"}, headers=auth_headers("admin-1"))
    assert listing.status_code == 400


def test_dispatcher_schedules_job(client, db, staff, customer):
    scheduled = (datetime.utcnow() + timedelta(days=3)).replace(microsecond=0)
    response = client.post(
        "/api/jobs",
        json={
            "customer_id": customer.id,
            "technician_id": staff["tech_one_id"],
            "scheduled_date": scheduled.isoformat(),
            "service_type": "carpet",
        },
        headers=auth_headers("dispatch-1"),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "scheduled"
    assert db.query(Job).count() == 1


def test_job_for_missing_customer_is_rejected(client, staff):
    response = client.post(
        "/api/jobs",
        json={"customer_id": 999, "scheduled_date": datetime.utcnow().isoformat()},
        headers=auth_headers("dispatch-1"),
    )
    assert response.status_code == 400


def test_technician_cannot_schedule_jobs(client, staff, customer):
    response = client.post(
        "/api/jobs",
        json={"customer_id": customer.id, "scheduled_date": datetime.utcnow().isoformat()},
        headers=auth_headers("tech-1"),
    )
    assert response.status_code == 403


def test_missing_token_is_unauthorized(client, staff):
    response = client.get("/api/jobs")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_expired_token_is_flagged(client, staff):
    token = make_token("dispatch-1", expires_in=-60)
    response = client.get("/api/jobs", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.headers["X-Token-Expired"] == "true"


def test_token_signed_with_other_secret_is_rejected(client, staff):
    token = make_token("dispatch-1", secret="not-the-secret")
    response = client.get("/api/jobs", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_user_without_role_is_forbidden(client, staff):
    response = client.get("/api/jobs", headers=auth_headers("stranger"))
    assert response.status_code == 403


def test_role_is_read_on_every_request(client, db, jobs):
    assert client.get("/api/jobs", headers=auth_headers("dispatch-1")).status_code == 200

    db.query(UserRole).filter(UserRole.user_id == "dispatch-1").delete()
    db.commit()

    assert client.get("/api/jobs", headers=auth_headers("dispatch-1")).status_code == 403


def test_session_cookie_is_accepted(client, jobs):
    client.cookies.set("sb-access-token", make_token("tech-1"))
    response = client.get("/api/jobs")

    assert response.status_code == 200
    assert len(response.json()["data"]) == 1


def test_technician_without_technician_row_sees_no_jobs(client, db, jobs):
    db.add(UserRole(user_id="tech-unlinked", email="new@dirtfree.test", role="technician"))
    db.commit()
    headers = auth_headers("tech-unlinked")

    assert client.get("/api/jobs", headers=headers).json()["data"] == []
    assert client.get(f"/api/jobs/{jobs['unassigned']}", headers=headers).status_code == 404

    response = client.patch(
        f"/api/jobs/{jobs['unassigned']}/status", json={"status": "cancelled"}, headers=headers
    )
    assert response.status_code == 404
    db.expire_all()
    assert db.get(Job, jobs["unassigned"]).status == "scheduled"
