import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


@dataclass(frozen=True)
class Settings:
    razorpay_key_id: str
    razorpay_key_secret: str
    razorpay_webhook_secret: str
    razorpay_timeout_seconds: float
    order_expiry_seconds: int
    webhook_lease_seconds: int
    order_rate_limit: int
    order_rate_window_seconds: int
    jwt_secret: str
    jwt_algorithm: str
    log_level: str


def get_settings() -> Settings:
    # Read on every call so a patched environment is picked up
    return Settings(
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
        razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
        razorpay_timeout_seconds=float(os.getenv("RAZORPAY_TIMEOUT_SECONDS", "10")),
        order_expiry_seconds=int(os.getenv("ORDER_EXPIRY_SECONDS", "3600")),
        webhook_lease_seconds=int(os.getenv("WEBHOOK_LEASE_SECONDS", "300")),
        order_rate_limit=int(os.getenv("ORDER_RATE_LIMIT", "5")),
        order_rate_window_seconds=int(os.getenv("ORDER_RATE_WINDOW_SECONDS", "600")),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
