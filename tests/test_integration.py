import pytest
import requests
from razorpay.errors import BadRequestError

from conftest import (
    ADMIN_ID,
    TestingSessionLocal,
    checkout_signature,
    razorpay_payment,
    signed_webhook,
    webhook_event,
)
from pettrack_payments.auth import verify_token
from pettrack_payments.main import app as fastapi_app
from pettrack_payments.models import Order, Payment, Refund, WebhookEvent
from pettrack_payments.routes import get_gateway


@pytest.fixture
def razorpay_sdk(client, mocker):
    # Route through the real gateway wrapper with only the SDK client mocked
    del fastapi_app.dependency_overrides[get_gateway]
    sdk_class = mocker.patch("pettrack_payments.razorpay_service.razorpay.Client")
    sdk = sdk_class.return_value
    sdk.order.create.return_value = {
        "id": "order_abc",
        "entity": "order",
        "amount": 100000,
        "currency": "INR",
        "status": "created",
        "notes": {"purpose": "premium_features"},
    }
    sdk.payment.fetch.return_value = razorpay_payment()
    sdk.payment.refund.return_value = {"id": "rfnd_int_1", "status": "pending", "amount": 100000}
    return sdk


def test_full_payment_lifecycle_integration(client, razorpay_sdk):
    """
    1. Create order (API -> Razorpay mocked -> DB)
    2. Verify checkout result (signature + authoritative fetch)
    3. Late payment.captured webhook is a no-op
    4. Admin refund, then refund.processed webhook
    """

    # --- 1. CREATE ORDER ---
    response = client.post(
        "/create-order",
        json={"amount_in_paise": 100000, "metadata": {"purpose": "premium_features"}},
    )
    assert response.status_code == 201
    local_order_id = response.json()["local_order_id"]

    create_kwargs = razorpay_sdk.order.create.call_args.kwargs
    assert create_kwargs["data"]["amount"] == 100000
    assert create_kwargs["data"]["currency"] == "INR"
    assert create_kwargs["timeout"] == 10.0

    # --- 2. VERIFY ---
    response = client.post("/verify-payment", json={
        "local_order_id": local_order_id,
        "razorpay_payment_id": "pay_xyz",
        "razorpay_order_id": "order_abc",
        "razorpay_signature": checkout_signature(),
        "client_meta": {"app_version": "2.3.0"},
    })
    assert response.status_code == 200
    assert response.json()["verified"] is True
    razorpay_sdk.payment.fetch.assert_called_once_with("pay_xyz", timeout=10.0)

    # --- 3. WEBHOOK RACE ---
    body, signature = signed_webhook(webhook_event("payment.captured", razorpay_payment(), "evt_cap_1"))
    for _ in range(2):
        response = client.post("/razorpay-webhook", content=body,
                               headers={"X-Razorpay-Signature": signature})
        assert response.status_code == 200
    assert response.json() == {"message": "Webhook already processed"}

    # --- 4. REFUND ---
    fastapi_app.dependency_overrides[verify_token] = lambda: {"sub": ADMIN_ID, "role": "admin"}
    response = client.post("/payments/pay_xyz/refund", json={"reason": "pet registration cancelled"})
    assert response.status_code == 201
    assert response.json()["status"] == "initiated"

    body, signature = signed_webhook(
        webhook_event("refund.processed", {"id": "rfnd_int_1", "payment_id": "pay_xyz"}, "evt_rfnd_1")
    )
    response = client.post("/razorpay-webhook", content=body,
                           headers={"X-Razorpay-Signature": signature})
    assert response.status_code == 200

    db = TestingSessionLocal()
    assert db.get(Order, local_order_id).status == "paid"
    payment = db.query(Payment).one()
    assert payment.status == "captured"
    assert payment.client_meta == {"app_version": "2.3.0"}
    assert db.query(Refund).one().status == "processed"
    assert db.query(WebhookEvent).filter(WebhookEvent.processed_at.isnot(None)).count() == 2
    db.close()


def test_gateway_timeout_is_retryable(client, razorpay_sdk):
    razorpay_sdk.order.create.side_effect = requests.exceptions.ReadTimeout()

    response = client.post(
        "/create-order",
        json={"amount_in_paise": 100000, "metadata": {"purpose": "premium_features"}},
    )

    assert response.status_code == 504
    assert response.json()["code"] == "gateway_timeout"
    db = TestingSessionLocal()
    assert db.query(Order).count() == 0
    db.close()


def test_gateway_rejection_leaves_no_order(client, razorpay_sdk):
    razorpay_sdk.order.create.side_effect = BadRequestError("Authentication failed")

    response = client.post(
        "/create-order",
        json={"amount_in_paise": 100000, "metadata": {"purpose": "premium_features"}},
    )

    assert response.status_code == 502
    db = TestingSessionLocal()
    assert db.query(Order).count() == 0
    db.close()


def test_late_capture_completes_order_after_rejected_verification(client, razorpay_sdk):
    response = client.post(
        "/create-order",
        json={"amount_in_paise": 100000, "metadata": {"purpose": "premium_features"}},
    )
    local_order_id = response.json()["local_order_id"]
    razorpay_sdk.payment.fetch.return_value = razorpay_payment(status="authorized")

    response = client.post("/verify-payment", json={
        "local_order_id": local_order_id,
        "razorpay_payment_id": "pay_xyz",
        "razorpay_order_id": "order_abc",
        "razorpay_signature": checkout_signature(),
    })
    assert response.status_code == 400
    assert response.json()["code"] == "payment_not_captured"

    body, signature = signed_webhook(webhook_event("payment.captured", razorpay_payment(), "evt_late"))
    response = client.post("/razorpay-webhook", content=body,
                           headers={"X-Razorpay-Signature": signature})
    assert response.status_code == 200

    db = TestingSessionLocal()
    assert db.get(Order, local_order_id).status == "paid"
    assert db.query(Payment).one().captured is True
    db.close()
