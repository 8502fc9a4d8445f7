"""
Toko Storefront - Shared Helpers
=================================
Pure utility functions with NO database or module dependencies.
"""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")

# Western Indonesia Time, used for payment expiry timestamps
WIB = timezone(timedelta(hours=7))


def now_utc() -> datetime:
    """Returns current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def safe_int(value: Optional[str]) -> Optional[int]:
    """Safely convert a string to int. Returns None on failure."""
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return None


def to_decimal(value, default: str = "0") -> Decimal:
    """Convert a DB/JSON number to Decimal without going through float."""
    if value is None:
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal(default)


def money(value) -> Decimal:
    """Quantize to two decimal places (half up)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value) -> str:
    """Fixed-point string with two decimals, e.g. '150000.00'."""
    return f"{money(value):.2f}"


def get_real_ip(request) -> str:
    """Extract real client IP from request (handles X-Forwarded-For proxy header)."""
    x_forwarded = request.headers.get("X-Forwarded-For")
    if x_forwarded:
        return x_forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"
