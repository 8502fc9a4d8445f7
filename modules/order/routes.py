"""
Order Routes
=============
Checkout (POST), admin status update (PUT), order detail and tracking.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import ORDER_RATE_WINDOW_SECONDS
from common.exceptions import AuthenticationError, NotFoundError, ValidationError
from common.helpers import get_real_ip
from common.security import csrf_check, check_origin, enforce_request_size, rate_limit
from modules.auth.deps import get_current_user, require_login, require_admin
from modules.cart.service import cart_service
from modules.order.service import order_service, serialize_order
from modules.order.validation import OrderLine, validate_order_input
from modules.payment.service import PaymentService, get_payment_service
from modules.shipping.booking import ShippingBookingService, get_booking_service
from modules.shipping.service import ShippingRateResolver, get_shipping_resolver

logger = logging.getLogger("toko.order")

router = APIRouter(prefix="/api/orders", tags=["orders"])

_order_rate_limit = rate_limit("orders", window=ORDER_RATE_WINDOW_SECONDS)


class StatusUpdateRequest(BaseModel):
    orderId: str = Field(..., min_length=1, max_length=26)
    status: str = Field(..., min_length=1, max_length=20)
    paymentData: Optional[Dict[str, Any]] = None
    shippingData: Optional[Dict[str, Any]] = None
    force: bool = False


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    return body


# ==========================================
# 🧾 Place Order
# ==========================================

@router.post("")
async def create_order(
    request: Request,
    db: AsyncSession = Depends(get_db),
    user=Depends(get_current_user),
    resolver: ShippingRateResolver = Depends(get_shipping_resolver),
    payments: PaymentService = Depends(get_payment_service),
):
    # Gate, in order, before any side effect
    await enforce_request_size(request)
    check_origin(request)
    await _order_rate_limit(request)
    if not user:
        raise AuthenticationError()
    csrf_check(request)

    body = await _json_body(request)
    data = validate_order_input(body)

    lines = data.items
    if data.use_cart:
        cart, invalid = cart_service.read_cart(request)
        if not cart or not cart.items:
            response = JSONResponse({"success": False, "message": "Cart is empty or invalid"}, status_code=400)
            if invalid:
                cart_service.clear_cart(response)
            return response
        lines = [OrderLine(i.product_id, i.quantity) for i in cart.items]

    result = await order_service.place_order(
        db, user, data, lines, resolver, payments,
        client_ip=get_real_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )

    response = JSONResponse({
        "success": True,
        "message": "Order created successfully",
        "data": result,
    })
    if data.use_cart:
        cart_service.clear_cart(response)
    return response


# ==========================================
# 🛠️ Update Status (admin / system)
# ==========================================

@router.put("")
async def update_order_status(
    request: Request,
    body: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin),
    booking: ShippingBookingService = Depends(get_booking_service),
):
    csrf_check(request)
    order = await order_service.update_status(
        db, body.orderId, body.status,
        actor=admin.email,
        booking=booking,
        payment_data=body.paymentData,
        shipping_data=body.shippingData,
        force=body.force,
    )
    return {"success": True, "message": "Order updated", "data": serialize_order(order)}


# ==========================================
# 🔍 Order Detail
# ==========================================

@router.get("/{order_id}")
async def get_order_detail(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_login),
):
    order = await order_service.get_order_for_user(db, order_id, user)
    return {"success": True, "data": order_service.order_detail(order)}


# ==========================================
# 📍 Tracking / Label
# ==========================================

@router.get("/{order_id}/tracking")
async def get_order_tracking(
    order_id: str,
    action: str = "",
    db: AsyncSession = Depends(get_db),
    user=Depends(require_login),
    booking: ShippingBookingService = Depends(get_booking_service),
):
    order = await order_service.get_order_for_user(db, order_id, user)

    if action == "label":
        shipping_id = order.shipping_order_id or ((order.meta or {}).get("shipping") or {}).get("id")
        if not shipping_id:
            raise ValidationError("Shipping order not found")
        label_url = await booking.get_label_url(shipping_id)
        if not label_url:
            raise NotFoundError("Shipping label not available")
        return {"success": True, "data": {"order_number": order.order_number, "label_url": label_url}}

    data = await order_service.track(db, order, booking)
    return {"success": True, "data": data}
