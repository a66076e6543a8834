from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, StrictInt


class CreateOrderRequest(BaseModel):
    amount_in_paise: StrictInt = Field(..., gt=0, description="Amount the client expects to pay, in paise")
    currency: str = Field(default="INR", min_length=3, max_length=3)
    receipt: Optional[str] = Field(default=None, max_length=40)
    metadata: Optional[Dict[str, Any]] = None


class CreateOrderResponse(BaseModel):
    local_order_id: str
    razorpay_order_id: str
    key_id: str
    amount_in_paise: int
    currency: str
    expires_at: Optional[int] = None


class VerifyPaymentRequest(BaseModel):
    local_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    client_meta: Optional[Dict[str, Any]] = None


class PaymentRecord(BaseModel):
    local_payment_id: str
    razorpay_payment_id: str
    razorpay_order_id: str
    amount_in_paise: int
    currency: str
    method: str
    status: str
    captured: bool
    captured_at: Optional[int] = None
    signature_valid: bool


class VerifyPaymentResponse(BaseModel):
    verified: bool
    payment_record: PaymentRecord


class OrderSummary(BaseModel):
    local_order_id: str
    razorpay_order_id: str
    receipt: str
    amount_in_paise: int
    currency: str
    status: str
    metadata: Dict[str, Any] = {}
    created_at: Optional[int] = None
    paid_at: Optional[int] = None
    expires_at: Optional[int] = None


class OrderDetail(OrderSummary):
    payments: List[PaymentRecord] = []


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class OrderHistoryResponse(BaseModel):
    orders: List[OrderSummary]
    meta: PageMeta


class RefundRequest(BaseModel):
    amount_in_paise: Optional[StrictInt] = Field(default=None, gt=0)
    reason: str = Field(..., min_length=1, max_length=255)


class RefundResponse(BaseModel):
    refund_id: str
    razorpay_refund_id: str
    razorpay_payment_id: str
    amount_in_paise: int
    status: str
    reason: str
