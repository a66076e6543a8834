"""Server-side price list.

Every purchasable item is priced here. Client-supplied amounts are only
ever compared against these values, never charged.
"""
from typing import Optional

from pettrack_payments.errors import UnknownPurposeError, UnsupportedCurrencyError

SUPPORTED_CURRENCIES = ("INR",)

# Amounts in paise
PRICES = {
    "qr_registration": 50000,
    "premium_features": 100000,
    "pet_registration": 200000,
}


def compute_amount(user_id: str, metadata: Optional[dict], currency: str = "INR") -> int:
    if currency.upper() not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrencyError(f"Currency {currency} is not supported", currency=currency)

    purpose = (metadata or {}).get("purpose")
    if purpose not in PRICES:
        raise UnknownPurposeError(
            f"Unknown purchase purpose: {purpose!r}",
            purpose=purpose,
            user_id=user_id,
        )
    return PRICES[purpose]
