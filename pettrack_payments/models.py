import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from pettrack_payments.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    created = "created"
    paid = "paid"


class PaymentStatus(str, enum.Enum):
    created = "created"
    failed = "failed"
    authorized = "authorized"
    captured = "captured"


class RefundStatus(str, enum.Enum):
    initiated = "initiated"
    processed = "processed"
    failed = "failed"


class WebhookEventStatus(str, enum.Enum):
    processing = "processing"
    processed = "processed"
    failed = "failed"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=True)
    role = Column(String(20), nullable=False, default="user")      # user | admin
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    razorpay_order_id = Column(String(64), unique=True, nullable=False, index=True)
    receipt = Column(String(64), nullable=False)
    amount_in_paise = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), nullable=False, default=OrderStatus.created.value)
    notes = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=True)
    raw_order_payload = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="order", order_by="Payment.created_at")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    local_order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    razorpay_payment_id = Column(String(64), unique=True, nullable=False, index=True)
    razorpay_order_id = Column(String(64), nullable=False, index=True)
    amount_in_paise = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(String(32), nullable=True)                      # card | upi | netbanking | wallet
    status = Column(String(20), nullable=False, default=PaymentStatus.created.value)
    captured = Column(Boolean, nullable=False, default=False)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    bank = Column(String(64), nullable=True)
    vpa = Column(String(255), nullable=True)
    card = Column(JSON, nullable=True)
    fee = Column(BigInteger, nullable=True)
    tax = Column(BigInteger, nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    signature_verified_at = Column(DateTime(timezone=True), nullable=True)
    verification_method = Column(String(20), nullable=True)
    failure_reason = Column(Text, nullable=True)
    raw_payment_payload = Column(JSON, nullable=True)
    client_meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment", order_by="Refund.created_at")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=new_id)
    razorpay_event_id = Column(String(128), unique=True, nullable=False, index=True)
    event_type = Column(String(64), nullable=True)
    raw_event = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.processing.value)
    attempts = Column(Integer, nullable=False, default=0)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=new_id)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    razorpay_payment_id = Column(String(64), nullable=False, index=True)
    razorpay_refund_id = Column(String(64), unique=True, nullable=False, index=True)
    amount_in_paise = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default=RefundStatus.initiated.value)
    reason = Column(Text, nullable=True)
    initiated_by = Column(String(36), nullable=True)
    raw_refund_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payment = relationship("Payment", back_populates="refunds")
