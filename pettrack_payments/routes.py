from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pettrack_payments.auth import current_user_id, require_admin
from pettrack_payments.config import get_settings
from pettrack_payments.database import get_db
from pettrack_payments.payment_service import PaymentService
from pettrack_payments.razorpay_service import RazorpayGateway
from pettrack_payments.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderDetail,
    OrderHistoryResponse,
    RefundRequest,
    RefundResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)

router = APIRouter()


def get_gateway() -> RazorpayGateway:
    return RazorpayGateway.from_settings(get_settings())


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(db, gateway, get_settings())


@router.get("/config")
def public_config(service: PaymentService = Depends(get_payment_service)):
    return service.get_public_config()


@router.post("/create-order", response_model=CreateOrderResponse, status_code=201)
def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_order(
        request.amount_in_paise,
        request.currency,
        user_id,
        receipt=request.receipt,
        metadata=request.metadata,
    )


# Signature-protected; the checkout result itself proves possession of the order
@router.post("/verify-payment", response_model=VerifyPaymentResponse)
def verify_payment(
    request: VerifyPaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    return service.verify_payment(
        request.local_order_id,
        request.razorpay_payment_id,
        request.razorpay_order_id,
        request.razorpay_signature,
        client_meta=request.client_meta,
    )


@router.get("/orders", response_model=OrderHistoryResponse)
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    return service.list_orders(user_id, page=page, limit=limit)


@router.get("/orders/{local_order_id}", response_model=OrderDetail)
def get_order(
    local_order_id: str,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_order(local_order_id, user_id)


@router.post("/payments/{razorpay_payment_id}/refund", response_model=RefundResponse, status_code=201)
def refund(
    razorpay_payment_id: str,
    request: RefundRequest,
    admin_id: str = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.refund_payment(
        razorpay_payment_id,
        request.amount_in_paise,
        request.reason,
        initiated_by=admin_id,
    )
