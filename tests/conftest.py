import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PASSWORD_HASH_ROUNDS"] = "1000"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from powergotha import auth_service, repository
from powergotha.db import get_db, init_db
from powergotha.errors import AuthenticationError
from powergotha.main import create_app
from powergotha.models import Plan
from powergotha.oauth import AuthStrategyRegistry, OAuthProfile

PASSWORD = "Secret@123"


class FakeGateway:
    def __init__(self):
        self.orders = []
        self.payments = {}

    def create_order(self, amount, currency, metadata=None):
        order = {"id": f"pi_{len(self.orders) + 1}", "amount": int(round(amount * 100)), "currency": currency.lower()}
        self.orders.append({**order, "metadata": metadata})
        return order

    def add_payment(self, payment_id, order_id, method="card", status="succeeded"):
        self.payments[payment_id] = {"id": payment_id, "method": method, "status": status, "order_id": order_id}

    def fetch_payment(self, payment_id):
        return self.payments.get(payment_id, {"id": payment_id, "status": "failed", "order_id": None})

    def parse_webhook(self, payload, signature):
        data = json.loads(payload)
        return {"type": data["type"], "payment_id": data.get("payment_id"), "order_id": data.get("order_id")}


class FakeNotifier:
    def __init__(self):
        self.messages = []

    def enqueue(self, message):
        self.messages.append(message)


class BrokenNotifier:
    def enqueue(self, message):
        raise RuntimeError("queue is down")


class FakeSms:
    def __init__(self):
        self.sent = []

    def send_otp(self, phone_number, otp):
        self.sent.append((phone_number, otp))
        return True


class FakeGoogle:
    name = "google"

    def authorization_url(self, state=None):
        return "https://accounts.example.com/auth"

    def fetch_profile(self, code):
        if code == "bad":
            raise AuthenticationError("Unauthorized")
        return OAuthProfile(provider="google", id="g-123", name="Meera Farms", email="meera@example.com")


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def client(session_factory, gateway, notifier, sms):
    app = create_app(
        strategies=AuthStrategyRegistry([FakeGoogle()]),
        gateway=gateway,
        notifier=notifier,
        sms=sms,
        run_scheduler=False,
    )

    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    return TestClient(app)


@pytest.fixture
def plan(db):
    row = Plan(name="Premium Yearly", amount=499.0, plan_type="yearly", language_id=1)
    db.add(row)
    db.commit()
    return repository.get_plan(db, row.id)


def make_active_user(db, phone="9876543210", name="Asha", email="asha@example.com"):
    user, code = auth_service.register(db, name, phone, PASSWORD)
    auth_service.verify_otp(db, user.id, code)
    if email:
        with repository.transaction(db):
            repository.update_user(db, user.id, email=email)
    return repository.get_user(db, user.id)


@pytest.fixture
def user(db):
    return make_active_user(db)
