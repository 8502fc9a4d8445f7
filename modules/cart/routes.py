"""
Cart Routes
=============
JSON API over the signed cart cookie: view, add, update, remove, clear.
"""

from typing import Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from common.exceptions import StoreError, ValidationError
from common.security import rate_limit
from modules.cart.service import cart_service

router = APIRouter(prefix="/api/cart", tags=["cart"], dependencies=[Depends(rate_limit("general"))])


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    return body


def _error(e: StoreError, invalid_cookie: bool) -> JSONResponse:
    response = JSONResponse({"success": False, "message": e.message}, status_code=e.status_code)
    if invalid_cookie:
        cart_service.clear_cart(response)
    return response


# ==========================================
# 🛒 View Cart
# ==========================================

@router.get("")
async def get_cart(request: Request, db: AsyncSession = Depends(get_db)):
    cart, invalid = cart_service.read_cart(request)
    data = await cart_service.enrich(db, cart)
    response = JSONResponse({"success": True, "data": data})
    if invalid:
        cart_service.clear_cart(response)
    return response


# ==========================================
# ➕ Add Item
# ==========================================

@router.post("")
async def add_to_cart(request: Request, db: AsyncSession = Depends(get_db)):
    cart, invalid = cart_service.read_cart(request)
    try:
        body = await _json_body(request)
        session, name = await cart_service.add_item(
            db, cart, body.get("productId"), body.get("quantity", 1),
        )
    except StoreError as e:
        return _error(e, invalid)

    data = await cart_service.enrich(db, session)
    response = JSONResponse({"success": True, "message": f"{name} added to cart", "data": data})
    cart_service.write_cart(response, session)
    return response


# ==========================================
# ✏️ Update Quantity
# ==========================================

@router.put("")
async def update_cart(request: Request, db: AsyncSession = Depends(get_db)):
    cart, invalid = cart_service.read_cart(request)
    try:
        body = await _json_body(request)
        quantity = body.get("quantity")
        session = await cart_service.update_item(db, cart, body.get("productId"), quantity)
    except StoreError as e:
        return _error(e, invalid)

    data = await cart_service.enrich(db, session)
    message = "Item removed from cart" if quantity == 0 else "Cart updated"
    response = JSONResponse({"success": True, "message": message, "data": data})
    cart_service.write_cart(response, session)
    return response


# ==========================================
# 🗑️ Remove Item / Clear
# ==========================================

@router.delete("")
async def remove_from_cart(
    request: Request,
    productId: Optional[int] = None,
    clearAll: bool = False,
    db: AsyncSession = Depends(get_db),
):
    if clearAll:
        response = JSONResponse({"success": True, "message": "Cart cleared"})
        cart_service.clear_cart(response)
        return response

    cart, invalid = cart_service.read_cart(request)
    try:
        session = cart_service.remove_item(cart, productId)
    except StoreError as e:
        return _error(e, invalid)

    data = await cart_service.enrich(db, session)
    response = JSONResponse({"success": True, "message": "Item removed from cart", "data": data})
    cart_service.write_cart(response, session)
    return response
