"""
Pricing - commission split, renewal amount and expiry arithmetic.

Pure functions only; nothing here touches the store.
"""

import math
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from slotledger.config import settings
from slotledger.models.api import AccountType
from slotledger.models.domain import CommissionSplit

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Checked in order on the product row; the first positive value is the price.
RENEWAL_PRICE_FIELDS = (
    "renewal_price",
    "price_renewal",
    "renewal_price_affiliate",
    "price_renovation",
)

# Logged-in buyers pay the affiliate price; the list price is the fallback.
PURCHASE_PRICE_FIELDS = (
    "price_affiliate",
    "price_logged",
    "price_login",
    "login_price",
    "affiliate_price",
)


def to_money(value: Any) -> Decimal:
    """Quantize to cents. Floats go through str() so 9.5 stays 9.50."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def commission_for(account_type: AccountType | str | None) -> Decimal:
    """Flat platform commission per settled unit (not a percentage)."""
    if not isinstance(account_type, AccountType):
        account_type = AccountType.parse(account_type)
    if account_type is AccountType.FULL_ACCOUNT:
        return to_money(settings.commission_full_account)
    return to_money(settings.commission_profile_slots)


def split_amount(amount: Decimal, account_type: AccountType | str | None) -> CommissionSplit:
    """Provider receives ``max(0, amount - commission)``."""
    amount = to_money(amount)
    commission = commission_for(account_type)
    credit = max(ZERO, amount - commission)
    return CommissionSplit(amount=amount, commission=commission, provider_credit=credit)


def first_positive(candidates: Iterable[Any]) -> Decimal | None:
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            value = to_money(candidate)
        except (ArithmeticError, ValueError, TypeError):
            continue
        if value > 0:
            return value
    return None


def purchase_amount(product: Any) -> Decimal:
    """
    Price a buyer pays for one unit.

    The first affiliate price field that is set wins, even when it is zero
    (a free promotion). Otherwise the list price.
    """
    for name in PURCHASE_PRICE_FIELDS:
        value = getattr(product, name, None)
        if value is not None:
            return to_money(value)
    return to_money(getattr(product, "price", None) or ZERO)


def renewal_amount(product: Any, price_paid: Any = None) -> Decimal | None:
    """
    Price of one renewal.

    Renewal price fields on the product first, then what the buyer paid last
    time, then the product's list price. None when nothing is positive.
    """
    candidates = [getattr(product, name, None) for name in RENEWAL_PRICE_FIELDS]
    candidates.append(price_paid)
    candidates.append(getattr(product, "price", None))
    return first_positive(candidates)


def next_expiry(current_expires_at: datetime | None, duration_days: int, now: datetime) -> datetime:
    """Extend from the current expiry while it is still ahead, else from now."""
    base = current_expires_at if current_expires_at is not None and current_expires_at > now else now
    return base + timedelta(days=duration_days)


def days_left(expires_at: datetime | None, now: datetime) -> int | None:
    """Whole days remaining, rounded up; 0 once expired; None when unlimited."""
    if expires_at is None:
        return None
    remaining = (expires_at - now).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / 86400)
