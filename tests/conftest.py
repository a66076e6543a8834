import json
import os

# Must be in place before the application modules are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_123")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "webhook_secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pettrack_payments.auth import verify_token
from pettrack_payments.config import get_settings
from pettrack_payments.database import Base
from pettrack_payments.main import app as fastapi_app
from pettrack_payments.models import User
from pettrack_payments.payment_service import PaymentService
from pettrack_payments.routes import get_gateway
from pettrack_payments.signatures import compute_checkout_signature, compute_webhook_signature

USER_ID = "user_0000000012345678"
ADMIN_ID = "admin_000000000000001"

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    db.add(User(id=USER_ID, email="owner@example.com", role="user", is_active=True))
    db.add(User(id=ADMIN_ID, email="admin@example.com", role="admin", is_active=True))
    db.commit()
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway(mocker):
    gw = mocker.Mock()

    def create_order(amount, currency, receipt, notes):
        return {
            "id": "order_abc",
            "entity": "order",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
            "status": "created",
        }

    gw.create_order.side_effect = create_order
    gw.fetch_payment.return_value = razorpay_payment()
    return gw


@pytest.fixture
def service(db, gateway):
    return PaymentService(db, gateway, get_settings())


@pytest.fixture
def client(monkeypatch, gateway):
    monkeypatch.setattr("pettrack_payments.database.SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[verify_token] = lambda: {"sub": USER_ID, "role": "user"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def razorpay_payment(payment_id="pay_xyz", order_id="order_abc", amount=100000, status="captured"):
    return {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "order_id": order_id,
        "method": "upi",
        "captured": status == "captured",
        "vpa": "owner@okbank",
        "fee": 2360,
        "tax": 360,
        "created_at": 1700000000,
    }


def checkout_signature(order_id="order_abc", payment_id="pay_xyz"):
    return compute_checkout_signature(order_id, payment_id, get_settings().razorpay_key_secret)


def signed_webhook(event: dict):
    body = json.dumps(event).encode("utf-8")
    return body, compute_webhook_signature(body, get_settings().razorpay_webhook_secret)


def webhook_event(event_type, entity, event_id="evt_001"):
    key = event_type.split(".")[0]
    return {
        "entity": "event",
        "event_id": event_id,
        "event": event_type,
        "contains": [key],
        "payload": {key: {"entity": entity}},
        "created_at": 1700000100,
    }
