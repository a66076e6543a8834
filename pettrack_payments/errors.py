"""Error types raised by the payment core.

Each error carries the HTTP status and a stable code so the transport
layer can render it without inspecting messages. Idempotent replays are
never errors.
"""


class PaymentError(Exception):
    status_code = 400
    code = "payment_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


# Policy violations

class AmountMismatchError(PaymentError):
    code = "amount_mismatch"


class UnknownPurposeError(PaymentError):
    code = "unknown_purpose"


class UnsupportedCurrencyError(PaymentError):
    code = "unsupported_currency"


class UserNotActiveError(PaymentError):
    status_code = 403
    code = "user_not_active"


class TooManyOrdersError(PaymentError):
    status_code = 429
    code = "too_many_orders"


class OrderNotFoundError(PaymentError):
    status_code = 404
    code = "order_not_found"


class PaymentNotFoundError(PaymentError):
    status_code = 404
    code = "payment_not_found"


class OrderMismatchError(PaymentError):
    code = "order_mismatch"


class OrderAlreadyProcessedError(PaymentError):
    status_code = 409
    code = "order_already_processed"


class RefundNotAllowedError(PaymentError):
    code = "refund_not_allowed"


# Trust failures

class InvalidSignatureError(PaymentError):
    code = "invalid_signature"


class InvalidWebhookPayloadError(PaymentError):
    code = "invalid_webhook_payload"


# Gateway inconsistency

class PaymentAmountMismatchError(PaymentError):
    code = "payment_amount_mismatch"


class PaymentNotCapturedError(PaymentError):
    code = "payment_not_captured"


# Infrastructure

class GatewayError(PaymentError):
    status_code = 502
    code = "gateway_error"


class GatewayTimeoutError(GatewayError):
    status_code = 504
    code = "gateway_timeout"


class ConfigurationError(PaymentError):
    status_code = 500
    code = "not_configured"


class WebhookNotConfiguredError(ConfigurationError):
    code = "webhook_not_configured"


class WebhookInProgressError(PaymentError):
    # Another delivery of the same event holds it; the sender should retry later
    status_code = 409
    code = "webhook_in_progress"


class WebhookProcessingError(PaymentError):
    status_code = 500
    code = "webhook_processing_failed"
