"""
Shipping Module - Rate Normalizer
==================================
Turns an untyped carrier response into List[ShippingRate].

1. Look for the rate array under a fixed list of top-level keys
2. Otherwise search nested objects (bounded depth) for the first array
   whose first element looks like a rate
3. Map each candidate through the alias tables; malformed entries are
   dropped, never fatal
"""

import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional

from modules.shipping.schemas import ShippingRate

logger = logging.getLogger("toko.shipping.normalizer")

RATE_ARRAY_KEYS = (
    "pricing", "data", "rates", "couriers", "results",
    "options", "courier_pricing", "available_couriers",
)
RATE_MARKER_KEYS = ("price", "cost", "courier_name", "company")
MAX_SEARCH_DEPTH = 4

COURIER_NAME_ALIASES = ("courier_name", "company", "courier", "name", "courier_company", "shipping_company")
COURIER_CODE_ALIASES = ("courier_code", "company_code")
SERVICE_NAME_ALIASES = (
    "courier_service_name", "service_name", "type", "service",
    "service_type", "courier_type", "product", "product_name",
)
SERVICE_CODE_ALIASES = ("courier_service_code", "service_code")
PRICE_ALIASES = ("price", "final_price", "total_price", "cost", "rate", "shipping_cost", "fee")
DURATION_ALIASES = ("duration", "etd", "estimated_delivery", "delivery_time", "est_delivery", "lead_time")
INSURANCE_ALIASES = ("insurance_fee", "insurance_cost", "insurance")
DESCRIPTION_ALIASES = ("description", "service_description")

DEFAULT_DURATION = "1-3 hari kerja"

_CODE_STRIP_RE = re.compile(r"[^a-z0-9_]")
_WHITESPACE_RE = re.compile(r"\s+")


def make_code(value: str) -> str:
    """'J&T Express' -> 'jt_express'"""
    return _CODE_STRIP_RE.sub("", _WHITESPACE_RE.sub("_", value.strip().lower()))


def _first(raw: dict, aliases) -> Any:
    for key in aliases:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> Optional[str]:
    """Accepts strings and {'name': ...} style objects."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        return _text(value.get("name"))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    # NaN / Infinity cannot be compared or rounded
    return number if number.is_finite() else None


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ==========================================
# Locating the rate array
# ==========================================

def _looks_like_rate(obj: Any) -> bool:
    return isinstance(obj, dict) and any(k in obj for k in RATE_MARKER_KEYS)


def _search(node: Any, depth: int) -> Optional[list]:
    if depth > MAX_SEARCH_DEPTH:
        return None
    if isinstance(node, list):
        if node and _looks_like_rate(node[0]):
            return node
        for child in node:
            found = _search(child, depth + 1)
            if found is not None:
                return found
    elif isinstance(node, dict):
        for child in node.values():
            found = _search(child, depth + 1)
            if found is not None:
                return found
    return None


def find_rate_candidates(data: Any) -> list:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []

    for key in RATE_ARRAY_KEYS:
        value = data.get(key)
        if isinstance(value, list) and value:
            return value

    found = _search(data, 0)
    return found or []


# ==========================================
# Per-candidate mapping
# ==========================================

def _duration(raw: dict) -> str:
    text = _text(_first(raw, DURATION_ALIASES))
    if text:
        return text

    min_day, max_day = _number(raw.get("min_day")), _number(raw.get("max_day"))
    if min_day is not None and max_day is not None:
        if min_day == max_day:
            return f"{_round(min_day)} hari"
        return f"{_round(min_day)} - {_round(max_day)} hari"

    return _text(raw.get("delivery_estimate")) or DEFAULT_DURATION


def normalize_rate(raw: Any) -> Optional[ShippingRate]:
    """Map one candidate; None when it is unusable."""
    if not isinstance(raw, dict):
        return None

    courier_name = _text(_first(raw, COURIER_NAME_ALIASES))
    service_name = _text(_first(raw, SERVICE_NAME_ALIASES))
    price = _number(_first(raw, PRICE_ALIASES))

    if not courier_name or not service_name:
        return None
    if price is None or price <= 0:
        return None
    if raw.get("available") is False or raw.get("status") == "unavailable":
        return None

    courier_code = _text(_first(raw, COURIER_CODE_ALIASES))
    courier_code = make_code(courier_code) if courier_code else make_code(courier_name)
    service_code = _text(_first(raw, SERVICE_CODE_ALIASES)) or f"{courier_code}_{make_code(service_name)}"

    insurance = _number(_first(raw, INSURANCE_ALIASES))

    return ShippingRate(
        courier_name=courier_name,
        courier_code=courier_code,
        courier_service_name=service_name,
        courier_service_code=service_code,
        price=_round(price),
        duration=_duration(raw),
        description=_text(_first(raw, DESCRIPTION_ALIASES)) or f"{courier_name} service",
        insurance_fee=_round(insurance) if insurance is not None and insurance > 0 else 0,
    )


def normalize_rates(data: Any) -> List[ShippingRate]:
    candidates = find_rate_candidates(data)
    rates = []
    for raw in candidates:
        rate = normalize_rate(raw)
        if rate is not None:
            rates.append(rate)
    if candidates and len(rates) < len(candidates):
        logger.debug(f"Dropped {len(candidates) - len(rates)} unusable rate entries")
    return rates
