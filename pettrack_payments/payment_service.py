"""Order creation, checkout verification and webhook reconciliation.

``PaymentService`` is built per request around an injected SQLAlchemy
session and gateway client. Two idempotency keys protect money state:
the Razorpay payment id (one Payment row per id, enforced by a unique
constraint) and the Razorpay event id (one WebhookEvent row per id).
Order transitions ``created -> paid`` are single conditional UPDATEs,
so a client verification and a webhook for the same payment cannot both
win.
"""
import hashlib
import json
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pettrack_payments.config import Settings
from pettrack_payments.errors import (
    AmountMismatchError,
    ConfigurationError,
    GatewayError,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    OrderAlreadyProcessedError,
    OrderMismatchError,
    OrderNotFoundError,
    PaymentAmountMismatchError,
    PaymentNotCapturedError,
    PaymentNotFoundError,
    RefundNotAllowedError,
    TooManyOrdersError,
    UserNotActiveError,
    WebhookInProgressError,
    WebhookNotConfiguredError,
    WebhookProcessingError,
)
from pettrack_payments.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    WebhookEvent,
    WebhookEventStatus,
    utcnow,
)
from pettrack_payments.pricing import compute_amount
from pettrack_payments.signatures import verify_checkout_signature, verify_webhook_signature
from pettrack_payments.users import find_active_user

logger = logging.getLogger(__name__)

EVENT_ID_HEADER = "x-razorpay-event-id"


def _epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive datetimes; everything is stored in UTC
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_epoch(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class PaymentService:

    def __init__(self, db: Session, gateway, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self._webhook_handlers = {
            "payment.captured": ("payment", self._on_payment_captured),
            "payment.failed": ("payment", self._on_payment_failed),
            "payment.authorized": ("payment", self._on_payment_authorized),
            "order.paid": ("order", self._on_order_paid),
            "refund.processed": ("refund", self._on_refund_processed),
            "refund.failed": ("refund", self._on_refund_failed),
        }

    # -- lookups -----------------------------------------------------------

    def _find_payment(self, razorpay_payment_id: str) -> Optional[Payment]:
        return self.db.execute(
            select(Payment).filter_by(razorpay_payment_id=razorpay_payment_id)
        ).scalar_one_or_none()

    def _find_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self.db.execute(
            select(WebhookEvent).filter_by(razorpay_event_id=event_id)
        ).scalar_one_or_none()

    def _mark_order_paid(self, order_id: str, now: datetime) -> bool:
        """Move an order from created to paid. False if it was not in created."""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.created.value)
            .values(status=OrderStatus.paid.value, paid_at=now, updated_at=now)
        )
        return result.rowcount == 1

    # -- public config -----------------------------------------------------

    def get_public_config(self) -> dict:
        if not self.settings.razorpay_key_id:
            raise ConfigurationError("Razorpay key id is not configured")
        return {"key_id": self.settings.razorpay_key_id}

    # -- create order ------------------------------------------------------

    def _check_order_rate(self, user_id: str) -> None:
        limit = self.settings.order_rate_limit
        if limit <= 0:
            return
        since = utcnow() - timedelta(seconds=self.settings.order_rate_window_seconds)
        recent = self.db.execute(
            select(func.count(Order.id)).where(Order.user_id == user_id, Order.created_at >= since)
        ).scalar_one()
        if recent >= limit:
            logger.warning("User %s hit the order limit (%s in %ss)",
                           user_id, recent, self.settings.order_rate_window_seconds)
            raise TooManyOrdersError(
                "Too many payment attempts. Please try again later.",
                retry_after=self.settings.order_rate_window_seconds,
            )

    def create_order(self, amount_in_paise: int, currency: str, user_id: str,
                     receipt: Optional[str] = None, metadata: Optional[dict] = None) -> dict:
        """Create a Razorpay order for the server-computed price and persist it.

        The client amount is only compared against the price list. Nothing
        is written locally unless the gateway order was created.
        """
        currency = (currency or "INR").upper()
        metadata = metadata or {}

        if find_active_user(self.db, user_id) is None:
            raise UserNotActiveError("User not found or inactive", user_id=user_id)
        self._check_order_rate(user_id)

        amount = compute_amount(user_id, metadata, currency)
        if amount != amount_in_paise:
            logger.warning(
                "Amount mismatch for user %s: client=%s server=%s",
                user_id, amount_in_paise, amount,
            )
            raise AmountMismatchError(
                "Amount mismatch. Server computed amount differs from client amount.",
                expected=amount,
                received=amount_in_paise,
            )

        receipt = receipt or f"order-{int(time.time() * 1000)}-{user_id[-8:]}"
        notes = {"user_id": user_id, **metadata}

        remote = self.gateway.create_order(amount, currency, receipt, notes)
        if remote.get("amount") != amount:
            raise GatewayError(
                f"Gateway order {remote.get('id')} amount {remote.get('amount')} does not match {amount}"
            )

        expires_at = utcnow() + timedelta(seconds=self.settings.order_expiry_seconds)
        order = Order(
            user_id=user_id,
            razorpay_order_id=remote["id"],
            receipt=receipt,
            amount_in_paise=amount,
            currency=currency,
            status=OrderStatus.created.value,
            notes=remote.get("notes") or notes,
            metadata_=metadata,
            raw_order_payload=remote,
            expires_at=expires_at,
        )
        self.db.add(order)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Failed to persist order for gateway order %s", remote["id"], exc_info=True)
            raise

        logger.info("Order %s created for gateway order %s (%s paise)", order.id, remote["id"], amount)
        return {
            "local_order_id": order.id,
            "razorpay_order_id": remote["id"],
            "key_id": self.settings.razorpay_key_id,
            "amount_in_paise": amount,
            "currency": currency,
            "expires_at": _epoch(expires_at),
        }

    # -- verify payment ----------------------------------------------------

    def _payment_record(self, payment: Payment) -> dict:
        return {
            "local_payment_id": payment.id,
            "razorpay_payment_id": payment.razorpay_payment_id,
            "razorpay_order_id": payment.razorpay_order_id,
            "amount_in_paise": payment.amount_in_paise,
            "currency": payment.currency,
            "method": payment.method or "",
            "status": payment.status,
            "captured": payment.captured,
            "captured_at": _epoch(payment.captured_at),
            "signature_valid": payment.signature_valid,
        }

    def _verification_result(self, payment: Payment) -> dict:
        return {
            "verified": payment.status == PaymentStatus.captured.value,
            "payment_record": self._payment_record(payment),
        }

    def _replay(self, razorpay_payment_id: str) -> dict:
        """Result for the loser of a race on the same payment id."""
        existing = self._find_payment(razorpay_payment_id)
        if existing is None:
            raise OrderAlreadyProcessedError("Order already processed or invalid status")
        logger.info("Payment %s recorded concurrently, returning stored outcome", razorpay_payment_id)
        return self._verification_result(existing)

    def _payment_from_gateway(self, order: Order, razorpay_payment_id: str, remote: dict, **fields) -> Payment:
        # Typed columns are extracted here once; the raw payload is kept only for audit
        return Payment(
            local_order_id=order.id,
            razorpay_payment_id=razorpay_payment_id,
            razorpay_order_id=order.razorpay_order_id,
            amount_in_paise=remote.get("amount", order.amount_in_paise),
            currency=remote.get("currency", order.currency),
            method=remote.get("method"),
            bank=remote.get("bank"),
            vpa=remote.get("vpa"),
            card=remote.get("card"),
            fee=remote.get("fee"),
            tax=remote.get("tax"),
            verification_method="hmac",
            raw_payment_payload=remote or None,
            **fields,
        )

    def _record_failed_payment(self, payment: Payment) -> Optional[dict]:
        """Persist a failed attempt for audit.

        Returns the stored outcome instead when another request already
        recorded this payment id.
        """
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._replay(payment.razorpay_payment_id)
        logger.warning(
            "Payment %s for order %s rejected: %s",
            payment.razorpay_payment_id, payment.local_order_id, payment.failure_reason,
        )
        return None

    def verify_payment(self, local_order_id: str, razorpay_payment_id: str, razorpay_order_id: str,
                       razorpay_signature: str, client_meta: Optional[dict] = None) -> dict:
        existing = self._find_payment(razorpay_payment_id)
        if existing is not None:
            logger.info("Payment %s already recorded, returning stored outcome", razorpay_payment_id)
            return self._verification_result(existing)

        order = self.db.get(Order, local_order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", local_order_id=local_order_id)
        if order.razorpay_order_id != razorpay_order_id:
            raise OrderMismatchError("Order ID mismatch", local_order_id=local_order_id)
        if order.status != OrderStatus.created.value:
            raise OrderAlreadyProcessedError("Order already processed or invalid status",
                                             local_order_id=local_order_id)

        secret = self.settings.razorpay_key_secret
        if not secret:
            raise ConfigurationError("Razorpay key secret is not configured")

        now = utcnow()
        client_meta = client_meta or {}

        if not verify_checkout_signature(razorpay_order_id, razorpay_payment_id, razorpay_signature, secret):
            failed = self._payment_from_gateway(
                order, razorpay_payment_id, {},
                status=PaymentStatus.failed.value,
                signature_valid=False,
                signature_verified_at=now,
                failure_reason="invalid_signature",
                client_meta=client_meta,
            )
            replay = self._record_failed_payment(failed)
            if replay is not None:
                return replay
            raise InvalidSignatureError("Invalid payment signature", razorpay_payment_id=razorpay_payment_id)

        remote = self.gateway.fetch_payment(razorpay_payment_id)

        if remote.get("amount") != order.amount_in_paise:
            failed = self._payment_from_gateway(
                order, razorpay_payment_id, remote,
                status=PaymentStatus.failed.value,
                signature_valid=True,
                signature_verified_at=now,
                failure_reason="amount_mismatch",
                client_meta=client_meta,
            )
            replay = self._record_failed_payment(failed)
            if replay is not None:
                return replay
            raise PaymentAmountMismatchError(
                f"Amount mismatch. Expected: {order.amount_in_paise}, Got: {remote.get('amount')}",
                expected=order.amount_in_paise,
                received=remote.get("amount"),
            )

        if remote.get("status") != PaymentStatus.captured.value:
            failed = self._payment_from_gateway(
                order, razorpay_payment_id, remote,
                status=PaymentStatus.failed.value,
                signature_valid=True,
                signature_verified_at=now,
                failure_reason=f"not_captured:{remote.get('status')}",
                client_meta=client_meta,
            )
            replay = self._record_failed_payment(failed)
            if replay is not None:
                return replay
            raise PaymentNotCapturedError(
                f"Payment not captured. Status: {remote.get('status')}",
                gateway_status=remote.get("status"),
            )

        payment = self._payment_from_gateway(
            order, razorpay_payment_id, remote,
            status=PaymentStatus.captured.value,
            captured=True,
            captured_at=_from_epoch(remote.get("created_at")) or now,
            signature_valid=True,
            signature_verified_at=now,
            client_meta=client_meta,
        )

        # Order transition and Payment insert commit together or not at all
        try:
            if not self._mark_order_paid(order.id, now):
                self.db.rollback()
                return self._replay(razorpay_payment_id)
            self.db.add(payment)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._replay(razorpay_payment_id)

        logger.info("Payment %s captured, order %s paid", razorpay_payment_id, local_order_id)
        return self._verification_result(payment)

    # -- webhooks ----------------------------------------------------------

    @staticmethod
    def _resolve_event_id(payload: dict, raw_body: bytes, headers: dict) -> str:
        event_id = payload.get("event_id")
        if event_id:
            return str(event_id)
        for name, value in headers.items():
            if name.lower() == EVENT_ID_HEADER and value:
                return str(value)
        # Same bytes, same id: redeliveries of an id-less event still dedupe
        return "sha256:" + hashlib.sha256(raw_body).hexdigest()

    @staticmethod
    def _check_event_shape(payload: dict) -> None:
        event_type = payload.get("event")
        if not isinstance(event_type, str) or not event_type:
            raise InvalidWebhookPayloadError("Webhook body has no event type")
        sections = payload.get("payload")
        if sections is None:
            return
        if not isinstance(sections, dict):
            raise InvalidWebhookPayloadError("Webhook payload must be a JSON object")
        for key, section in sections.items():
            if not isinstance(section, dict) or not isinstance(section.get("entity", {}), dict):
                raise InvalidWebhookPayloadError(f"Webhook payload.{key} is malformed")

    def _take_over_event(self, event_id: str, payload: dict, headers: dict, now: datetime) -> bool:
        """Reclaim a row whose last attempt failed or whose lease went stale."""
        stale_before = now - timedelta(seconds=self.settings.webhook_lease_seconds)
        result = self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.razorpay_event_id == event_id,
                WebhookEvent.processed_at.is_(None),
                or_(
                    WebhookEvent.status == WebhookEventStatus.failed.value,
                    and_(
                        WebhookEvent.status == WebhookEventStatus.processing.value,
                        WebhookEvent.processing_started_at < stale_before,
                    ),
                ),
            )
            .values(
                status=WebhookEventStatus.processing.value,
                attempts=WebhookEvent.attempts + 1,
                processing_started_at=now,
                processing_result=None,
                raw_event=payload,
                headers=headers,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False
        self.db.commit()
        return True

    def _claim_event(self, event_id: str, event_type: str, payload: dict,
                     headers: dict) -> Optional[WebhookEvent]:
        """Take the event row as a processing lease.

        None means the event was already handled. A delivery that finds the
        row held by another attempt gets ``WebhookInProgressError``.
        """
        now = utcnow()
        if self._take_over_event(event_id, payload, headers, now):
            logger.info("Retrying webhook %s", event_id)
            return self._find_event(event_id)

        current = self._find_event(event_id)
        if current is None:
            event = WebhookEvent(
                razorpay_event_id=event_id,
                event_type=event_type,
                raw_event=payload,
                headers=headers,
                signature_valid=True,
                status=WebhookEventStatus.processing.value,
                attempts=1,
                processing_started_at=now,
            )
            self.db.add(event)
            try:
                self.db.commit()
                return event
            except IntegrityError:
                self.db.rollback()
                current = self._find_event(event_id)

        if current is not None and current.processed_at is not None:
            return None
        raise WebhookInProgressError(f"Webhook event {event_id} is being processed",
                                     event_id=event_id)

    def handle_webhook(self, raw_body: bytes, signature: str, headers: dict) -> dict:
        secret = self.settings.razorpay_webhook_secret
        if not secret:
            raise WebhookNotConfiguredError("Webhook secret not configured")

        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")

        # Reject before any write
        if not verify_webhook_signature(raw_body, signature, secret):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise InvalidWebhookPayloadError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidWebhookPayloadError("Webhook body must be a JSON object")
        self._check_event_shape(payload)

        event_id = self._resolve_event_id(payload, raw_body, headers)
        event_type = payload["event"]
        stored_headers = {str(k): str(v) for k, v in headers.items()}

        event = self._claim_event(event_id, event_type, payload, stored_headers)
        if event is None:
            logger.info("Webhook %s already processed", event_id)
            return {"message": "Webhook already processed"}

        try:
            self._dispatch(event_type, payload)
            event.status = WebhookEventStatus.processed.value
            event.processed_at = utcnow()
            event.processing_result = {"status": "success"}
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error("Webhook %s (%s) processing failed", event_id, event_type, exc_info=True)
            self._record_event_failure(event_id, e)
            raise WebhookProcessingError(f"Webhook processing failed: {e}", event_id=event_id) from e

        logger.info("Webhook %s (%s) processed", event_id, event_type)
        return {"message": "Webhook processed successfully"}

    def _record_event_failure(self, event_id: str, error: Exception) -> None:
        event = self._find_event(event_id)
        if event is None:
            return
        event.status = WebhookEventStatus.failed.value
        event.processing_result = {
            "status": "error",
            "error": str(error),
            "error_type": type(error).__name__,
        }
        self.db.commit()

    def _dispatch(self, event_type: Optional[str], payload: dict) -> None:
        handler = self._webhook_handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled webhook event type %s stored for review", event_type)
            return
        entity_key, apply = handler
        entity = ((payload.get("payload") or {}).get(entity_key) or {}).get("entity")
        if not entity:
            logger.warning("Webhook %s carries no %s entity", event_type, entity_key)
            return
        apply(entity)

    def _on_payment_captured(self, entity: dict) -> None:
        payment = self._find_payment(entity.get("id"))
        if payment is None or payment.status == PaymentStatus.captured.value:
            return

        now = utcnow()
        if not self._mark_order_paid(payment.local_order_id, now):
            settled_by = self.db.execute(
                select(Payment.razorpay_payment_id).where(
                    Payment.local_order_id == payment.local_order_id,
                    Payment.status == PaymentStatus.captured.value,
                    Payment.id != payment.id,
                )
            ).scalar_one_or_none()
            if settled_by is not None:
                logger.warning(
                    "Order %s already settled by %s; leaving %s as %s",
                    payment.local_order_id, settled_by, payment.razorpay_payment_id, payment.status,
                )
                payment.raw_payment_payload = entity
                return

        payment.status = PaymentStatus.captured.value
        payment.captured = True
        payment.captured_at = now
        payment.raw_payment_payload = entity
        logger.info("Payment %s marked as captured via webhook", payment.razorpay_payment_id)

    def _on_payment_failed(self, entity: dict) -> None:
        payment = self._find_payment(entity.get("id"))
        if payment is None or payment.status == PaymentStatus.failed.value:
            return
        if payment.status == PaymentStatus.captured.value:
            logger.warning("Ignoring payment.failed for captured payment %s", payment.razorpay_payment_id)
            return
        payment.status = PaymentStatus.failed.value
        payment.failure_reason = entity.get("error_description") or entity.get("error_code")
        payment.raw_payment_payload = entity
        logger.info("Payment %s marked as failed via webhook", payment.razorpay_payment_id)

    def _on_payment_authorized(self, entity: dict) -> None:
        payment = self._find_payment(entity.get("id"))
        if payment is None or payment.status != PaymentStatus.created.value:
            return
        payment.status = PaymentStatus.authorized.value
        payment.raw_payment_payload = entity
        logger.info("Payment %s marked as authorized via webhook", payment.razorpay_payment_id)

    def _on_order_paid(self, entity: dict) -> None:
        order = self.db.execute(
            select(Order).filter_by(razorpay_order_id=entity.get("id"))
        ).scalar_one_or_none()
        if order is None or order.status == OrderStatus.paid.value:
            return
        if self._mark_order_paid(order.id, utcnow()):
            logger.info("Order %s marked as paid via webhook", entity.get("id"))

    def _set_refund_status(self, entity: dict, status: RefundStatus) -> None:
        refund = self.db.execute(
            select(Refund).filter_by(razorpay_refund_id=entity.get("id"))
        ).scalar_one_or_none()
        if refund is None or refund.status == status.value:
            return
        refund.status = status.value
        refund.raw_refund_payload = entity
        logger.info("Refund %s marked as %s via webhook", refund.razorpay_refund_id, status.value)

    def _on_refund_processed(self, entity: dict) -> None:
        self._set_refund_status(entity, RefundStatus.processed)

    def _on_refund_failed(self, entity: dict) -> None:
        self._set_refund_status(entity, RefundStatus.failed)

    # -- history -----------------------------------------------------------

    def _order_summary(self, order: Order, with_payments: bool = False) -> dict:
        summary = {
            "local_order_id": order.id,
            "razorpay_order_id": order.razorpay_order_id,
            "receipt": order.receipt,
            "amount_in_paise": order.amount_in_paise,
            "currency": order.currency,
            "status": order.status,
            "metadata": order.metadata_ or {},
            "created_at": _epoch(order.created_at),
            "paid_at": _epoch(order.paid_at),
            "expires_at": _epoch(order.expires_at),
        }
        if with_payments:
            summary["payments"] = [self._payment_record(p) for p in order.payments]
        return summary

    def list_orders(self, user_id: str, page: int = 1, limit: int = 25) -> dict:
        offset = (page - 1) * limit
        total = self.db.execute(
            select(func.count()).select_from(Order).where(Order.user_id == user_id)
        ).scalar_one()
        orders = self.db.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).scalars().all()

        total_pages = math.ceil(total / limit) if total else 0
        return {
            "orders": [self._order_summary(o) for o in orders],
            "meta": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }

    def get_order(self, local_order_id: str, user_id: str) -> dict:
        order = self.db.get(Order, local_order_id)
        # Other users' orders are indistinguishable from missing ones
        if order is None or order.user_id != user_id:
            raise OrderNotFoundError("Order not found", local_order_id=local_order_id)
        return self._order_summary(order, with_payments=True)

    # -- refunds -----------------------------------------------------------

    def refund_payment(self, razorpay_payment_id: str, amount_in_paise: Optional[int],
                       reason: str, initiated_by: str) -> dict:
        payment = self._find_payment(razorpay_payment_id)
        if payment is None:
            raise PaymentNotFoundError("Payment not found", razorpay_payment_id=razorpay_payment_id)
        if payment.status != PaymentStatus.captured.value:
            raise RefundNotAllowedError("Can only refund captured payments", status=payment.status)

        refunded = sum(r.amount_in_paise for r in payment.refunds if r.status != RefundStatus.failed.value)
        remaining = payment.amount_in_paise - refunded
        amount = remaining if amount_in_paise is None else amount_in_paise
        if amount <= 0 or amount > remaining:
            raise RefundNotAllowedError(
                f"Refund amount must be between 1 and {remaining} paise",
                requested=amount,
                remaining=remaining,
            )

        remote = self.gateway.refund_payment(
            razorpay_payment_id, amount, {"reason": reason, "initiated_by": initiated_by}
        )
        refund = Refund(
            payment_id=payment.id,
            razorpay_payment_id=razorpay_payment_id,
            razorpay_refund_id=remote["id"],
            amount_in_paise=amount,
            status=(RefundStatus.processed.value if remote.get("status") == "processed"
                    else RefundStatus.initiated.value),
            reason=reason,
            initiated_by=initiated_by,
            raw_refund_payload=remote,
        )
        self.db.add(refund)
        self.db.commit()
        logger.info("Refund %s of %s paise initiated for payment %s", remote["id"], amount, razorpay_payment_id)

        return {
            "refund_id": refund.id,
            "razorpay_refund_id": refund.razorpay_refund_id,
            "razorpay_payment_id": razorpay_payment_id,
            "amount_in_paise": amount,
            "status": refund.status,
            "reason": reason,
        }
