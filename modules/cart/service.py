"""
Cart Module - Service Layer
==============================
Cart mutations over an already-verified CartSession.

Every operation builds the new item list first and checks all limits
before re-signing, so a rejected request never yields a partial cart.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from fastapi import Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import (
    CART_COOKIE_NAME, CART_SESSION_TTL_SECONDS, CART_MAX_TOTAL_ITEMS,
    CART_MAX_PER_PRODUCT, COOKIE_SECURE,
)
from common.exceptions import ValidationError, NotFoundError
from common.helpers import now_ms, money_str
from modules.cart.session import (
    CartItem, CartSession, CartSessionError,
    create_secure_cart, update_secure_cart, load_verified_cart, encode_cart_cookie,
)
from modules.catalog.service import catalog_service

logger = logging.getLogger("toko.cart")


class CartService:

    # ------------------------------------------
    # Cookie I/O
    # ------------------------------------------

    def read_cart(self, request: Request) -> Tuple[Optional[CartSession], bool]:
        """
        Returns (session, invalid). `invalid` is True when a cookie was present
        but failed verification; the caller must delete it.
        """
        raw = request.cookies.get(CART_COOKIE_NAME)
        if not raw:
            return None, False
        try:
            return load_verified_cart(raw), False
        except CartSessionError as e:
            logger.warning(f"Discarding cart cookie: {e}")
            return None, True

    def write_cart(self, response: Response, session: CartSession):
        response.set_cookie(
            CART_COOKIE_NAME,
            encode_cart_cookie(session),
            max_age=CART_SESSION_TTL_SECONDS,
            httponly=True,
            secure=COOKIE_SECURE,
            samesite="strict",
            path="/",
        )

    def clear_cart(self, response: Response):
        response.delete_cookie(CART_COOKIE_NAME, path="/")

    # ------------------------------------------
    # Mutations
    # ------------------------------------------

    async def add_item(
        self, db: AsyncSession, cart: Optional[CartSession], product_id, quantity,
    ) -> Tuple[CartSession, str]:
        """Add `quantity` of a product. Returns (new_session, product_name)."""
        product_id = self._product_id(product_id)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or not 1 <= quantity <= CART_MAX_PER_PRODUCT:
            raise ValidationError(f"Quantity must be between 1 and {CART_MAX_PER_PRODUCT}")

        product = await catalog_service.get_product(db, product_id)
        if not product:
            raise NotFoundError("Product not found")

        items = list(cart.items) if cart else []
        existing = cart.find(product_id) if cart else None

        if existing:
            new_qty = existing.quantity + quantity
            if new_qty > product.stock:
                raise ValidationError(f"Only {max(product.stock - existing.quantity, 0)} more available")
            if new_qty > CART_MAX_PER_PRODUCT:
                raise ValidationError(f"Maximum {CART_MAX_PER_PRODUCT} items per product allowed")
            items = [
                CartItem(i.product_id, new_qty, i.added_at) if i.product_id == product_id else i
                for i in items
            ]
        else:
            if quantity > product.stock:
                raise ValidationError(f"Only {product.stock} items available in stock")
            items.append(CartItem(product_id, quantity, now_ms()))

        self._check_total(items)
        session = update_secure_cart(cart, items) if cart else create_secure_cart(items)
        return session, product.name

    async def update_item(
        self, db: AsyncSession, cart: Optional[CartSession], product_id, quantity,
    ) -> CartSession:
        """Set quantity (0 removes the line)."""
        product_id = self._product_id(product_id)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or not 0 <= quantity <= CART_MAX_PER_PRODUCT:
            raise ValidationError(f"Quantity must be between 0 and {CART_MAX_PER_PRODUCT}")
        if not cart:
            raise NotFoundError("Cart not found")
        if not cart.find(product_id):
            raise NotFoundError("Product not found in cart")

        if quantity == 0:
            items = [i for i in cart.items if i.product_id != product_id]
        else:
            product = await catalog_service.get_product(db, product_id)
            if not product:
                raise NotFoundError("Product not found")
            if quantity > product.stock:
                raise ValidationError(f"Only {product.stock} items available in stock")
            items = [
                CartItem(i.product_id, quantity, i.added_at) if i.product_id == product_id else i
                for i in cart.items
            ]

        self._check_total(items)
        return update_secure_cart(cart, items)

    def remove_item(self, cart: Optional[CartSession], product_id) -> CartSession:
        product_id = self._product_id(product_id)
        if not cart:
            raise NotFoundError("Cart not found")
        if not cart.find(product_id):
            raise NotFoundError("Product not found in cart")
        return update_secure_cart(cart, [i for i in cart.items if i.product_id != product_id])

    # ------------------------------------------
    # Read model
    # ------------------------------------------

    async def enrich(self, db: AsyncSession, cart: Optional[CartSession]) -> dict:
        """Cart items joined with live product data."""
        if not cart:
            return {"items": [], "totalItems": 0, "totalPrice": money_str(0), "sessionId": None}

        products = await catalog_service.get_products_map(db, [i.product_id for i in cart.items])
        items: List[dict] = []
        total = Decimal("0")
        for item in cart.items:
            product = products.get(item.product_id)
            if not product:
                items.append({
                    **item.to_dict(),
                    "id": item.product_id,
                    "name": "Product not found",
                    "slug": "",
                    "price": money_str(0),
                    "stock": 0,
                    "imageUrl": None,
                    "isAvailable": False,
                    "totalPrice": money_str(0),
                })
                continue
            available = product.stock >= item.quantity
            line_total = product.price * item.quantity if available else Decimal("0")
            total += line_total
            items.append({
                **item.to_dict(),
                "id": product.id,
                "name": product.name,
                "slug": product.slug,
                "price": money_str(product.price),
                "stock": product.stock,
                "imageUrl": product.image_url,
                "isAvailable": available,
                "totalPrice": money_str(line_total),
            })

        return {
            "items": items,
            "totalItems": cart.total_quantity,
            "totalPrice": money_str(total),
            "sessionId": cart.session_id,
        }

    # ------------------------------------------

    @staticmethod
    def _product_id(value) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError("Valid product ID is required")
        return value

    @staticmethod
    def _check_total(items: List[CartItem]):
        if sum(i.quantity for i in items) > CART_MAX_TOTAL_ITEMS:
            raise ValidationError(f"Maximum {CART_MAX_TOTAL_ITEMS} items allowed in cart")


cart_service = CartService()
