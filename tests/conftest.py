import base64
import os
import time

# Settings are read at import time, so the environment is prepared first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest00000000000000000000000000"
os.environ["TWILIO_PHONE_NUMBER"] = "+17135550100"
os.environ.pop("TWILIO_MESSAGING_SERVICE_SID", None)
os.environ.pop("TWILIO_WEBHOOK_BASE_URL", None)
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test_secret"
os.environ["RESEND_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(b"resend-test-key").decode()
os.environ.pop("RESEND_API_KEY", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402

from dirtfree_crm import rate_limiter, slo  # noqa: E402
from dirtfree_crm.cache import dashboard_cache  # noqa: E402
from dirtfree_crm.database import Base, SessionLocal, engine  # noqa: E402
from dirtfree_crm.main import app  # noqa: E402
from dirtfree_crm.models import Customer, Technician, UserRole  # noqa: E402
from dirtfree_crm.webhook_security import compute_twilio_signature  # noqa: E402

TWILIO_AUTH_TOKEN = "test-auth-token"
JWT_SECRET = "test-jwt-secret"
CRON_SECRET = "test-cron-secret"
STRIPE_SECRET = "whsec_stripe_test_secret"
RESEND_SECRET = os.environ["RESEND_WEBHOOK_SECRET"]

INBOUND_URL = "http://testserver/api/twilio/inbound"
STATUS_URL = "http://testserver/api/twilio/status"


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.calls = []

    def incr(self, key):
        self.calls.append(("incr", key))
        return self

    def expire(self, key, seconds):
        self.calls.append(("expire", key, seconds))
        return self

    def set(self, key, value, ex=None):
        self.calls.append(("set", key, value, ex))
        return self

    def execute(self):
        results = []
        for call in self.calls:
            results.append(getattr(self.redis, call[0])(*call[1:]))
        self.calls = []
        return results


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the app uses"""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def ping(self):
        return True

    def info(self):
        return {"redis_version": "fake", "used_memory_human": "1K", "connected_clients": 1}

    def get(self, key):
        value = self.store.get(key)
        return None if value is None else str(value)

    def set(self, key, value, ex=None):
        self.store[key] = value
        if ex:
            self.expiry[key] = time.time() + ex
        return True

    def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def expire(self, key, seconds):
        self.expiry[key] = time.time() + seconds
        return True

    def ttl(self, key):
        if key not in self.store:
            return -2
        if key not in self.expiry:
            return -1
        return max(0, int(self.expiry[key] - time.time()))

    def pipeline(self):
        return FakePipeline(self)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr(rate_limiter, "get_redis_client", lambda: redis)
    monkeypatch.setattr(slo, "get_redis_client", lambda: redis)
    rate_limiter.reset_rate_limits()
    dashboard_cache.clear()
    yield redis
    rate_limiter.reset_rate_limits()


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def make_token(sub: str, secret: str = JWT_SECRET, expires_in: int = 3600, **claims) -> str:
    payload = {"sub": sub, "aud": "authenticated", "exp": int(time.time()) + expires_in}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(sub: str) -> dict:
    return {"Authorization": f"Bearer {make_token(sub)}"}


def twilio_headers(url: str, params: dict, token: str = TWILIO_AUTH_TOKEN, **extra) -> dict:
    headers = {"X-Twilio-Signature": compute_twilio_signature(token, url, params)}
    headers.update(extra)
    return headers


@pytest.fixture
def staff(db):
    """One user per role; a technician row linked to the technician user"""
    db.add_all(
        [
            UserRole(user_id="admin-1", email="admin@dirtfree.test", role="admin"),
            UserRole(user_id="dispatch-1", email="dispatch@dirtfree.test", role="dispatcher"),
            UserRole(user_id="tech-1", email="tech1@dirtfree.test", role="technician"),
            UserRole(user_id="tech-2", email="tech2@dirtfree.test", role="technician"),
        ]
    )
    tech_one = Technician(user_id="tech-1", name="Tina Tech", phone_e164="+17135550111")
    tech_two = Technician(user_id="tech-2", name="Tom Tech", phone_e164="+17135550122")
    db.add_all([tech_one, tech_two])
    db.commit()
    return {"tech_one_id": tech_one.id, "tech_two_id": tech_two.id}


@pytest.fixture
def customer(db):
    record = Customer(
        name="Carla Customer",
        email="carla@example.com",
        phone_e164="+17135551234",
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record
