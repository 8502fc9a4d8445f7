"""
Payment Routes
================
Gateway notification (server-to-server). The gateway calls this after
every transaction state change; it drives pending -> paid / failed.
"""

import logging

from fastapi import APIRouter, Request, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from common.exceptions import AuthorizationError, NotFoundError, ValidationError
from common.helpers import now_utc
from modules.order.models import OrderStatus
from modules.order.service import order_service
from modules.payment.service import PaymentService, get_payment_service, to_minor_units
from modules.shipping.booking import ShippingBookingService, get_booking_service

logger = logging.getLogger("toko.payment")

router = APIRouter(prefix="/api/payment", tags=["payment"])


# ==========================================
# 🔔 Gateway Notification
# ==========================================

@router.post("/notification")
async def payment_notification(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
    booking: ShippingBookingService = Depends(get_booking_service),
):
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON body")

    notification = payments.gateway.parse_notification(payload)
    if not notification.valid:
        raise AuthorizationError("Invalid signature")

    order = await order_service.get_order_by_number(db, notification.order_ref)
    if not order:
        logger.warning(f"Payment notification for unknown order {notification.order_ref}")
        raise NotFoundError("Order not found")

    if notification.order_status == OrderStatus.PAID.value:
        if to_minor_units(payload.get("gross_amount")) != to_minor_units(order.total):
            logger.error(
                f"Amount mismatch on {order.order_number}: "
                f"notified {payload.get('gross_amount')}, expected {order.total}"
            )
            raise ValidationError("Amount mismatch")

    order.update_meta(payment_notification={
        "transaction_status": notification.gateway_status,
        "transaction_id": payload.get("transaction_id"),
        "payment_type": payload.get("payment_type"),
        "fraud_status": payload.get("fraud_status"),
        "received_at": now_utc().isoformat(),
    })
    await db.flush()

    target = notification.order_status
    if target == OrderStatus.FAILED.value and order.status != OrderStatus.PENDING.value:
        # Late expire/cancel for an order that was already paid
        logger.info(f"Ignoring {notification.gateway_status} for {order.order_number} in status {order.status}")
        target = None

    changed = False
    if target:
        changed = await order_service.apply_status(
            db, order, target, "payment",
            {"transaction_status": notification.gateway_status, "transaction_id": payload.get("transaction_id")},
        )
    await db.commit()

    if changed and notification.order_status == OrderStatus.PAID.value:
        await order_service.on_paid(db, order, booking)

    logger.info(f"Payment notification {notification.gateway_status} for {order.order_number}")
    return {"success": True, "status": order.status}
