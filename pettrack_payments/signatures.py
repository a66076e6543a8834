"""HMAC-SHA256 signature checks for Razorpay checkout results and webhooks.

Checkout signatures cover ``order_id + "|" + payment_id``. Webhook
signatures cover the raw request body exactly as received, so callers
must pass the bytes from the wire, never a re-serialised object.
Digests are compared as lowercase hex, byte for byte.
"""
import hashlib
import hmac
from typing import Union


def _require(name: str, value) -> None:
    if value is None:
        raise TypeError(f"{name} must not be None")


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def compute_checkout_signature(order_id: str, payment_id: str, secret: str) -> str:
    _require("order_id", order_id)
    _require("payment_id", payment_id)
    _require("secret", secret)
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))


def compute_webhook_signature(raw_body: Union[bytes, str], secret: str) -> str:
    _require("raw_body", raw_body)
    _require("secret", secret)
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return _hmac_hex(secret, raw_body)


def _matches(expected: str, signature: str) -> bool:
    # compare_digest on bytes accepts any content, including non-ASCII input
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def verify_checkout_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    _require("signature", signature)
    return _matches(compute_checkout_signature(order_id, payment_id, secret), signature)


def verify_webhook_signature(raw_body: Union[bytes, str], signature: str, secret: str) -> bool:
    _require("signature", signature)
    return _matches(compute_webhook_signature(raw_body, secret), signature)
