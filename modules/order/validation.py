"""
Order Module - Input Validation
================================
Structural validation and free-text sanitization for checkout input.
Runs before anything touches storage or upstream services.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config.settings import MAX_ITEMS_PER_ORDER, MAX_STRING_LENGTH
from common.exceptions import ValidationError

PHONE_RE = re.compile(r"^(\+62|62|0)[0-9]{8,13}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
POSTAL_RE = re.compile(r"^\d{5}$")

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)

MAX_ITEM_QUANTITY = 100


def sanitize_string(value: Any, max_length: int = MAX_STRING_LENGTH) -> str:
    """Strip script tags, javascript: and inline handlers; trim; truncate."""
    if not isinstance(value, str):
        return ""
    cleaned = _SCRIPT_RE.sub("", value)
    cleaned = _JS_PROTOCOL_RE.sub("", cleaned)
    cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
    return cleaned.strip()[:max_length]


def normalize_phone(value: str) -> str:
    return re.sub(r"[\s-]", "", value or "")


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _text_len_ok(value: Any, low: int, high: int) -> bool:
    return isinstance(value, str) and low <= len(value.strip()) <= high


@dataclass
class OrderLine:
    product_id: int
    quantity: int


@dataclass
class OrderInput:
    """Checkout payload after validation + sanitization."""
    recipient_name: str
    phone: str
    email: str
    address: str
    city: str
    province: str
    postal_code: str
    courier_name: str
    courier_service: str
    use_cart: bool = False
    items: List[OrderLine] = field(default_factory=list)
    order_note: str = ""
    delivery_type: str = "now"


def validate_items(items: Any, errors: List[str]):
    if not isinstance(items, list):
        errors.append("Items must be an array")
        return
    if len(items) > MAX_ITEMS_PER_ORDER:
        errors.append(f"Maximum {MAX_ITEMS_PER_ORDER} items allowed per order")
        return
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not _is_positive_int(item.get("productId")):
            errors.append(f"Invalid product ID at item {index + 1}")
            continue
        qty = item.get("quantity")
        if not _is_positive_int(qty) or qty > MAX_ITEM_QUANTITY:
            errors.append(f"Invalid quantity at item {index + 1} (must be 1-{MAX_ITEM_QUANTITY})")


def merge_lines(items: List[Dict[str, Any]]) -> List[OrderLine]:
    """Collapse duplicate productIds, keeping first-seen order."""
    merged: Dict[int, int] = {}
    for item in items:
        merged[item["productId"]] = merged.get(item["productId"], 0) + item["quantity"]
    return [OrderLine(pid, qty) for pid, qty in merged.items()]


def validate_order_input(body: Any) -> OrderInput:
    """
    All checks run and are reported together.
    Raises ValidationError("msg1, msg2, ...").
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")

    errors: List[str] = []

    if not _text_len_ok(body.get("recipientName"), 2, 100):
        errors.append("Recipient name must be 2-100 characters")

    phone = normalize_phone(body.get("phone")) if isinstance(body.get("phone"), str) else ""
    if not PHONE_RE.match(phone):
        errors.append("Invalid Indonesian phone number format")

    email = body.get("email")
    if not isinstance(email, str) or not EMAIL_RE.match(email.strip()) or len(email) > 255:
        errors.append("Invalid email format")

    if not _text_len_ok(body.get("address"), 10, 500):
        errors.append("Address must be 10-500 characters")
    if not _text_len_ok(body.get("city"), 2, 100):
        errors.append("City must be 2-100 characters")
    if not _text_len_ok(body.get("province"), 2, 100):
        errors.append("Province must be 2-100 characters")

    postal = body.get("postalCode")
    if not isinstance(postal, str) or not POSTAL_RE.match(postal):
        errors.append("Postal code must be 5 digits")

    if not isinstance(body.get("courierName"), str) or not body["courierName"].strip():
        errors.append("Courier name is required")
    if not isinstance(body.get("courierService"), str) or not body["courierService"].strip():
        errors.append("Courier service is required")

    use_cart = body.get("useCart") is True
    raw_items = body.get("items")
    if not use_cart:
        if not raw_items:
            errors.append("Items are required")
        else:
            validate_items(raw_items, errors)
    elif raw_items:
        validate_items(raw_items, errors)

    note = body.get("orderNote")
    if note is not None and not isinstance(note, str):
        errors.append("Order note must be text")

    if errors:
        raise ValidationError(", ".join(errors))

    return OrderInput(
        recipient_name=sanitize_string(body["recipientName"], 100),
        phone=sanitize_string(phone, 20),
        email=sanitize_string(email.strip(), 255),
        address=sanitize_string(body["address"], 500),
        city=sanitize_string(body["city"], 100),
        province=sanitize_string(body["province"], 100),
        postal_code=postal,
        courier_name=sanitize_string(body["courierName"], 100),
        courier_service=sanitize_string(body["courierService"], 100),
        use_cart=use_cart,
        items=merge_lines(raw_items) if not use_cart else [],
        order_note=sanitize_string(note or "", 500),
        delivery_type=sanitize_string(body.get("deliveryType") or "now", 20) or "now",
    )


def parse_quote_items(raw: Optional[str]) -> List[OrderLine]:
    """`items` query param of the quote endpoint: JSON [{productId, quantity}]."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid items format")
    if not isinstance(parsed, list) or not parsed:
        raise ValidationError("Items must be a non-empty array")

    errors: List[str] = []
    validate_items(parsed, errors)
    if errors:
        raise ValidationError(", ".join(errors))
    return merge_lines(parsed)
