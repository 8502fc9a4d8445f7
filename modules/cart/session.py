"""
Cart Module - Signed Session
=============================
The cart lives in a client-held cookie, so every read treats it as
adversarial input. Signature:

    HMAC-SHA256(SECRET_KEY, '<json {items, timestamp}>:<sessionId>')

where timestamp is updatedAt (epoch ms). Every mutation re-signs the
whole list. Nothing here touches the database.
"""

import json
import secrets
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote, unquote

from config.settings import (
    SECRET_KEY, CART_SESSION_TTL_SECONDS, CART_MAX_TOTAL_ITEMS, CART_MAX_PER_PRODUCT,
)
from common.helpers import now_ms
from common.security import hmac_sha256_hex, constant_time_equals


class CartSessionError(ValueError):
    """Stored cart failed structural, expiry or signature checks."""
    pass


@dataclass
class CartItem:
    product_id: int
    quantity: int
    added_at: int

    def to_dict(self) -> dict:
        return {"productId": self.product_id, "quantity": self.quantity, "addedAt": self.added_at}


@dataclass
class CartSession:
    items: List[CartItem]
    signature: str
    session_id: str
    created_at: int
    updated_at: int

    @property
    def total_quantity(self) -> int:
        return sum(i.quantity for i in self.items)

    def find(self, product_id: int) -> Optional[CartItem]:
        return next((i for i in self.items if i.product_id == product_id), None)

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "signature": self.signature,
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# ==========================================
# Signing
# ==========================================

def _signing_payload(items: List[CartItem], timestamp: int, session_id: str) -> str:
    body = json.dumps(
        {"items": [i.to_dict() for i in items], "timestamp": timestamp},
        separators=(",", ":"),
    )
    return f"{body}:{session_id}"


def sign_cart(items: List[CartItem], timestamp: int, session_id: str, secret: Optional[str] = None) -> str:
    return hmac_sha256_hex(secret or SECRET_KEY, _signing_payload(items, timestamp, session_id))


def verify_signature(session: CartSession, secret: Optional[str] = None) -> bool:
    expected = sign_cart(session.items, session.updated_at, session.session_id, secret)
    return constant_time_equals(expected, session.signature)


def _copy_items(items: List[CartItem]) -> List[CartItem]:
    return [CartItem(i.product_id, i.quantity, i.added_at) for i in items]


def create_secure_cart(items: List[CartItem], now: Optional[int] = None) -> CartSession:
    ts = now if now is not None else now_ms()
    session_id = secrets.token_hex(32)
    items = _copy_items(items)
    return CartSession(
        items=items,
        signature=sign_cart(items, ts, session_id),
        session_id=session_id,
        created_at=ts,
        updated_at=ts,
    )


def update_secure_cart(existing: CartSession, items: List[CartItem], now: Optional[int] = None) -> CartSession:
    """Re-sign with the same sessionId/createdAt; updatedAt always moves forward."""
    ts = now if now is not None else now_ms()
    ts = max(ts, existing.updated_at + 1)
    items = _copy_items(items)
    return CartSession(
        items=items,
        signature=sign_cart(items, ts, existing.session_id),
        session_id=existing.session_id,
        created_at=existing.created_at,
        updated_at=ts,
    )


# ==========================================
# Validation
# ==========================================

def check_limits(items: List[CartItem]) -> Optional[str]:
    """Returns an error message if the item list breaks cart limits."""
    if len(items) > CART_MAX_TOTAL_ITEMS:
        return f"Maximum {CART_MAX_TOTAL_ITEMS} items allowed in cart"
    seen = set()
    for item in items:
        if item.product_id in seen:
            return "Duplicate product in cart"
        seen.add(item.product_id)
        if item.quantity < 1 or item.quantity > CART_MAX_PER_PRODUCT:
            return f"Maximum {CART_MAX_PER_PRODUCT} items per product"
    if sum(i.quantity for i in items) > CART_MAX_TOTAL_ITEMS:
        return f"Maximum {CART_MAX_TOTAL_ITEMS} items allowed in cart"
    return None


def validate_cart_session(session: Optional[CartSession], now: Optional[int] = None) -> bool:
    """
    Full check of a decoded session:
    1. Required fields present
    2. Not older than 24h from createdAt
    3. Item limits hold
    4. Signature matches (constant-time)
    """
    if session is None or not session.signature or not session.session_id:
        return False
    if not session.created_at or not session.updated_at:
        return False

    current = now if now is not None else now_ms()
    if current - session.created_at > CART_SESSION_TTL_SECONDS * 1000:
        return False

    if check_limits(session.items):
        return False

    return verify_signature(session)


# ==========================================
# Cookie encoding
# ==========================================

def encode_cart_cookie(session: CartSession) -> str:
    return quote(json.dumps(session.to_dict(), separators=(",", ":")), safe="")


def parse_cart_cookie(raw: str) -> CartSession:
    """Decode the cookie into a CartSession. Raises CartSessionError on malformed input."""
    try:
        data = json.loads(unquote(raw))
    except (ValueError, TypeError) as e:
        raise CartSessionError(f"Malformed cart cookie: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise CartSessionError("Malformed cart cookie: missing items")

    try:
        items = [
            CartItem(
                product_id=_strict_int(entry["productId"]),
                quantity=_strict_int(entry["quantity"]),
                added_at=_strict_int(entry.get("addedAt", 0)),
            )
            for entry in data["items"]
        ]
        return CartSession(
            items=items,
            signature=str(data["signature"]),
            session_id=str(data["sessionId"]),
            created_at=_strict_int(data["createdAt"]),
            updated_at=_strict_int(data["updatedAt"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CartSessionError(f"Malformed cart cookie: {e}")


def load_verified_cart(raw: str, now: Optional[int] = None) -> CartSession:
    """Parse and verify. Raises CartSessionError unless the cart is intact and fresh."""
    session = parse_cart_cookie(raw)
    if not validate_cart_session(session, now=now):
        raise CartSessionError("Invalid or expired cart session")
    return session


def _strict_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected integer, got {value!r}")
    return value
