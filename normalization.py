"""Map provider vocabulary onto the canonical enums and sign conventions.

Every function here is total: unknown input falls back to a default rather
than raising.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from models import BillingCycle, SubscriptionStatus
from money import to_decimal

DEFAULT_CURRENCY = "USD"

_CYCLES = {
    "WEEKLY": BillingCycle.weekly,
    "MONTHLY": BillingCycle.monthly,
    "ANNUALLY": BillingCycle.yearly,
}


def normalize_cycle(raw_frequency: Optional[str]) -> BillingCycle:
    return _CYCLES.get(raw_frequency or "", BillingCycle.monthly)


def normalize_status(is_active: bool) -> SubscriptionStatus:
    return SubscriptionStatus.active if is_active else SubscriptionStatus.inactive


def normalize_amount(signed_amount: object) -> Decimal:
    # Outflow streams may carry either sign; only the magnitude is meaningful.
    return abs(to_decimal(signed_amount))


def normalize_currency(code: Optional[str]) -> str:
    clean = (code or "").strip()
    return clean or DEFAULT_CURRENCY
