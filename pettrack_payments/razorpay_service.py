import logging

import razorpay
import requests
from razorpay.errors import BadRequestError, ServerError
from razorpay.errors import GatewayError as RazorpayGatewayError

from pettrack_payments.config import Settings
from pettrack_payments.errors import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


class RazorpayGateway:
    """Thin wrapper around the Razorpay SDK.

    Every call is bounded by ``timeout`` seconds. Timeouts surface as
    ``GatewayTimeoutError`` so callers can retry; anything else the SDK
    or transport raises becomes ``GatewayError``.
    """

    def __init__(self, key_id: str, key_secret: str, timeout: float = 10.0, client=None):
        self.timeout = timeout
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayGateway":
        return cls(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            timeout=settings.razorpay_timeout_seconds,
        )

    def _call(self, operation: str, func, *args, **kwargs) -> dict:
        try:
            return func(*args, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.warning("Razorpay %s timed out after %ss", operation, self.timeout)
            raise GatewayTimeoutError(f"Razorpay {operation} timed out") from e
        except (BadRequestError, RazorpayGatewayError, ServerError,
                requests.exceptions.RequestException) as e:
            logger.error("Razorpay %s failed: %s", operation, e)
            raise GatewayError(f"Razorpay {operation} failed: {e}") from e

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict) -> dict:
        return self._call(
            "order create",
            self.client.order.create,
            data={
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "notes": notes,
            },
        )

    def fetch_payment(self, payment_id: str) -> dict:
        return self._call("payment fetch", self.client.payment.fetch, payment_id)

    def refund_payment(self, payment_id: str, amount: int, notes: dict) -> dict:
        return self._call(
            "refund",
            self.client.payment.refund,
            payment_id,
            {"amount": amount, "notes": notes},
        )
