import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from pettrack_payments.config import get_settings
from pettrack_payments.database import Base, engine
from pettrack_payments.errors import PaymentError
from pettrack_payments.logging_config import configure_logging
from pettrack_payments.payment_service import PaymentService
from pettrack_payments.routes import get_payment_service, router

# Registers the tables on Base.metadata
from pettrack_payments import models  # noqa: F401

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Pet Track Payments")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if "retry_after" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/razorpay-webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    # Signatures cover the bytes on the wire, so the body is never parsed here
    payload = await request.body()

    if not x_razorpay_signature:
        raise HTTPException(status_code=400, detail="Missing X-Razorpay-Signature header")

    return service.handle_webhook(payload, x_razorpay_signature, dict(request.headers))
