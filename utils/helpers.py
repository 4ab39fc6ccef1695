"""Helper utilities for the checkout back-office service"""

import re
import secrets
import string
import uuid
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def validate_email(email: str) -> bool:
    """Validate email address format"""
    if not email or not isinstance(email, str):
        return False

    email = email.strip()

    # Basic format check - must have exactly one @ symbol
    if email.count('@') != 1:
        return False

    local_part, domain_part = email.split('@')

    # Local part validation
    if not local_part or len(local_part) > 64:
        return False

    # Reject consecutive dots
    if '..' in local_part or '..' in domain_part:
        return False

    if not domain_part or len(domain_part) > 253 or '.' not in domain_part:
        return False

    return _EMAIL_PATTERN.match(email) is not None


def normalize_email(email: Optional[str]) -> str:
    """Trim and lower-case an email for lookups"""
    return (email or "").strip().lower()


def generate_order_id() -> str:
    """Public order identifier, e.g. ORD-3F9A1C2B7D4E"""
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


def generate_coupon_code(prefix: str, length: int = 6) -> str:
    """Coupon code made of the prefix and upper-case alphanumerics"""
    alphabet = string.ascii_uppercase + string.digits
    return prefix.upper() + "".join(secrets.choice(alphabet) for _ in range(length))


def truncate_text(text: Optional[str], max_length: int = 100) -> Optional[str]:
    """Cut text to max_length characters"""
    if text is None or len(text) <= max_length:
        return text
    return text[:max_length]


def _group_digits(integer_part: str, separator: str) -> str:
    groups = []
    while len(integer_part) > 3:
        groups.insert(0, integer_part[-3:])
        integer_part = integer_part[:-3]
    groups.insert(0, integer_part)
    return separator.join(groups)


def format_amount(amount: Union[Decimal, float, int, str], currency: str) -> str:
    """Format a price the way checkout emails show it

    EUR -> €1.234,56, USD -> $1,234.56, anything else -> 1.234,5 KZ
    (grouped, decimals only when non-zero).
    """
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    integer_part, decimal_part = f"{abs(value):.2f}".split(".")
    currency = (currency or "").upper()

    if currency == "EUR":
        return f"{sign}€{_group_digits(integer_part, '.')},{decimal_part}"
    if currency == "USD":
        return f"{sign}${_group_digits(integer_part, ',')}.{decimal_part}"

    decimal_part = decimal_part.rstrip("0")
    formatted = _group_digits(integer_part, ".")
    if decimal_part:
        formatted = f"{formatted},{decimal_part}"
    return f"{sign}{formatted} {currency}"
