import hashlib
import hmac
import json

import pytest

from pettrack_payments.signatures import (
    compute_checkout_signature,
    compute_webhook_signature,
    verify_checkout_signature,
    verify_webhook_signature,
)

SECRET = "test_secret_key_12345"
ORDER_ID = "order_ABCxyz123"
PAYMENT_ID = "pay_XYZ789abc"


def _reference(secret, message):
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def test_checkout_signature_matches_reference_hmac():
    expected = _reference(SECRET, f"{ORDER_ID}|{PAYMENT_ID}")
    assert compute_checkout_signature(ORDER_ID, PAYMENT_ID, SECRET) == expected
    assert verify_checkout_signature(ORDER_ID, PAYMENT_ID, expected, SECRET) is True


@pytest.mark.parametrize("order_id,payment_id,secret", [
    ("order_ABCxyz124", PAYMENT_ID, SECRET),
    ("Order_ABCxyz123", PAYMENT_ID, SECRET),
    (ORDER_ID, "pay_XYZ789abd", SECRET),
    (ORDER_ID, PAYMENT_ID, "test_secret_key_12346"),
    (ORDER_ID, PAYMENT_ID + " ", SECRET),
])
def test_single_byte_change_breaks_checkout_signature(order_id, payment_id, secret):
    signature = compute_checkout_signature(ORDER_ID, PAYMENT_ID, SECRET)
    assert verify_checkout_signature(order_id, payment_id, signature, secret) is False


def test_checkout_signature_is_case_sensitive():
    signature = compute_checkout_signature(ORDER_ID, PAYMENT_ID, SECRET)
    assert verify_checkout_signature(ORDER_ID, PAYMENT_ID, signature.upper(), SECRET) is False


def test_checkout_signature_is_not_trimmed():
    signature = compute_checkout_signature(ORDER_ID, PAYMENT_ID, SECRET)
    assert verify_checkout_signature(ORDER_ID, PAYMENT_ID, signature + "\n", SECRET) is False


def test_non_hex_signature_is_rejected_not_raised():
    assert verify_checkout_signature(ORDER_ID, PAYMENT_ID, "ünïcode-signature", SECRET) is False


def test_missing_checkout_signature_raises():
    with pytest.raises(TypeError):
        verify_checkout_signature(ORDER_ID, PAYMENT_ID, None, SECRET)


def test_webhook_signature_covers_raw_bytes():
    body = b'{"event":"payment.captured","payload":{}}'
    signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
    assert compute_webhook_signature(body, "whsec") == signature
    assert verify_webhook_signature(body, signature, "whsec") is True
    assert verify_webhook_signature(body.decode(), signature, "whsec") is True


def test_semantically_equal_webhook_bodies_have_different_signatures():
    event = {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_1"}}}}
    compact = json.dumps(event, separators=(",", ":")).encode()
    spaced = json.dumps(event, indent=2).encode()
    reordered = json.dumps(dict(reversed(list(event.items())))).encode()

    signature = compute_webhook_signature(compact, "whsec")
    assert compute_webhook_signature(spaced, "whsec") != signature
    assert verify_webhook_signature(spaced, signature, "whsec") is False
    assert verify_webhook_signature(reordered, signature, "whsec") is False


def test_missing_webhook_signature_raises():
    with pytest.raises(TypeError):
        verify_webhook_signature(b"{}", None, "whsec")
