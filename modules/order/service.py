"""
Order Module - Service Layer
==============================
Checkout orchestration and the order status machine.

Checkout:
1. Re-price every line from storage and re-quote shipping
2. Match the client's courier selection against the fresh rates
3. One transaction: guarded stock decrements + order + item snapshots
4. After commit: open a payment session (failure keeps the order pending)

Status changes from payment notifications, tracking polls, carrier
webhooks and admins all go through apply_status(), which only moves
forward and records provenance in metadata.status_history.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from config.settings import STORE_CONFIG
from common.exceptions import (
    InsufficientStockError, NotFoundError, PaymentError, ShippingError, ValidationError,
)
from common.helpers import now_utc, money_str
from modules.catalog.service import catalog_service
from modules.order.models import (
    Order, OrderItem, OrderStatus, STATUS_RANK, TERMINAL_STATUSES, BASE_STATUSES,
)
from modules.order.pricing import build_quote, select_rate, compute_totals
from modules.order.validation import OrderInput, OrderLine
from modules.payment.service import PaymentService
from modules.shipping.booking import ShippingBookingService, map_carrier_status, describe_carrier_status
from modules.shipping.service import ShippingRateResolver

logger = logging.getLogger("toko.order")


def store_info() -> Dict[str, str]:
    return {
        "name": STORE_CONFIG["name"],
        "city": STORE_CONFIG["city"],
        "province": STORE_CONFIG["province"],
        "postal_code": STORE_CONFIG["postal_code"],
    }


def serialize_order(order: Order, include_items: bool = False) -> Dict[str, Any]:
    """Client view of an order. Payment links only while pending."""
    meta = order.meta or {}
    data = {
        "id": order.id,
        "orderNumber": order.order_number,
        "status": order.status,
        "statusLabel": order.status_label,
        "subtotal": money_str(order.subtotal),
        "shippingCost": money_str(order.shipping_cost),
        "courierInsurance": money_str(order.courier_insurance),
        "total": money_str(order.total),
        "recipientName": order.recipient_name,
        "phone": order.recipient_phone,
        "email": order.recipient_email,
        "address": order.recipient_address,
        "city": order.recipient_city,
        "province": order.recipient_province,
        "postalCode": order.recipient_postal_code,
        "courierName": order.courier_name,
        "courierService": order.courier_service,
        "deliveryType": order.delivery_type,
        "orderNote": order.order_note,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }
    payment_url = (meta.get("payment") or {}).get("redirect_url")
    if order.status == OrderStatus.PENDING.value and payment_url:
        data["paymentUrl"] = payment_url
    if include_items:
        data["items"] = [serialize_item(i) for i in order.items]
    return data


def serialize_item(item: OrderItem) -> Dict[str, Any]:
    return {
        "productId": item.product_id,
        "name": item.name,
        "description": item.description,
        "category": item.category,
        "price": money_str(item.price),
        "quantity": item.quantity,
        "weight": item.weight,
        "height": item.height,
        "length": item.length,
        "width": item.width,
    }


def public_metadata(order: Order) -> Dict[str, Any]:
    """Metadata minus stale payment links."""
    meta = dict(order.meta or {})
    if order.status != OrderStatus.PENDING.value and isinstance(meta.get("payment"), dict):
        payment = dict(meta["payment"])
        payment.pop("redirect_url", None)
        payment.pop("token", None)
        meta["payment"] = payment
    return meta


class OrderService:

    # ==========================================
    # 🧾 Checkout
    # ==========================================

    async def place_order(
        self,
        db: AsyncSession,
        user,
        data: OrderInput,
        lines: List[OrderLine],
        resolver: ShippingRateResolver,
        payments: PaymentService,
        client_ip: str = "",
        user_agent: str = "",
    ) -> Dict[str, Any]:
        if not lines:
            raise ValidationError("No items to order")

        quote = await build_quote(db, resolver, data.postal_code, lines, check_stock=True)
        rate = select_rate(quote.rates, data.courier_name, data.courier_service)
        totals = compute_totals(quote.subtotal, rate)

        order = Order(
            user_id=user.id,
            subtotal=totals.subtotal,
            shipping_cost=totals.shipping_cost,
            courier_insurance=totals.insurance,
            total=totals.total,
            recipient_name=data.recipient_name,
            recipient_phone=data.phone,
            recipient_email=data.email,
            recipient_address=data.address,
            recipient_city=data.city,
            recipient_province=data.province,
            recipient_postal_code=data.postal_code,
            shipper_name=STORE_CONFIG["owner_name"],
            shipper_phone=STORE_CONFIG["phone"],
            shipper_email=STORE_CONFIG["email"],
            origin_address=STORE_CONFIG["address"],
            origin_note=STORE_CONFIG["note"],
            origin_postal_code=STORE_CONFIG["postal_code"],
            courier_name=rate.courier_name,
            courier_service=rate.courier_service_code,
            delivery_type=data.delivery_type,
            order_note=data.order_note or None,
            status=OrderStatus.PENDING.value,
            meta={
                "shipping_rate": rate.to_dict(),
                "store_config": store_info(),
                "created_from": "web",
                "client_ip": client_ip,
                "user_agent": user_agent[:500],
                "status_history": [{
                    "from": None,
                    "to": OrderStatus.PENDING.value,
                    "source": "checkout",
                    "at": now_utc().isoformat(),
                    "evidence": None,
                }],
            },
        )
        order.items = [
            OrderItem(
                product_id=line.product.id,
                name=line.product.name,
                description=line.product.description,
                category=line.product.category,
                price=line.unit_price,
                quantity=line.quantity,
                weight=line.dimension("weight"),
                height=line.dimension("height"),
                length=line.dimension("length"),
                width=line.dimension("width"),
            )
            for line in quote.lines
        ]

        # Rollback expires loaded products; keep plain values for error reporting
        decrements = [(line.product.id, line.product.name, line.quantity) for line in quote.lines]

        # One transaction: every decrement is guarded so stock never goes negative
        try:
            for product_id, name, quantity in decrements:
                if not await catalog_service.decrement_stock(db, product_id, quantity):
                    await db.rollback()
                    available = await catalog_service.get_stock(db, product_id) or 0
                    raise InsufficientStockError(name, available, quantity)
            db.add(order)
            await db.commit()
        except InsufficientStockError:
            raise
        except Exception:
            await db.rollback()
            logger.exception("Order transaction failed")
            raise

        logger.info(f"Order {order.order_number} created for user {user.id}, total {money_str(order.total)}")

        payment = None
        try:
            payment = await payments.create_payment(order)
        except PaymentError as e:
            # Order stays pending; payment can be retried against it
            logger.error(f"Payment session failed for {order.order_number}: {e.message}")

        if payment:
            order.update_meta(payment={**payment, "created_at": now_utc().isoformat()})
            await db.commit()

        return {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "total": money_str(order.total),
            "store_info": store_info(),
            "payment": payment,
        }

    # ==========================================
    # 🔁 Status machine
    # ==========================================

    async def apply_status(
        self,
        db: AsyncSession,
        order: Order,
        new_status: str,
        source: str,
        evidence: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> bool:
        """
        Idempotent, forward-only transition. Returns True if applied.
        Same status is a no-op; backwards moves and moves out of a terminal
        status are ignored unless `force` (admin correction).
        The caller commits.
        """
        current = order.status
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid status: {new_status}")

        if target.value == current:
            return False

        if not force:
            current_status = OrderStatus(current)
            if current_status in TERMINAL_STATUSES:
                logger.info(f"Ignoring {source} transition {current} -> {target.value} on {order.order_number} (terminal)")
                return False
            if target in STATUS_RANK and STATUS_RANK[target] <= STATUS_RANK[current_status]:
                logger.info(f"Ignoring stale {source} transition {current} -> {target.value} on {order.order_number}")
                return False

        history = list((order.meta or {}).get("status_history") or [])
        history.append({
            "from": current,
            "to": target.value,
            "source": source,
            "at": now_utc().isoformat(),
            "evidence": evidence,
            "forced": force or None,
        })
        new_meta = dict(order.meta or {})
        new_meta["status_history"] = history

        # Conditional on the status we read, so racing triggers cannot both win
        result = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == current)
            .values({Order.status: target.value, Order.meta: new_meta, Order.updated_at: now_utc()})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(f"Concurrent status change on {order.order_number}; {source} transition skipped")
            return False

        set_committed_value(order, "status", target.value)
        set_committed_value(order, "meta", new_meta)
        logger.info(f"Order {order.order_number}: {current} -> {target.value} ({source})")
        return True

    async def on_paid(self, db: AsyncSession, order: Order, booking: ShippingBookingService):
        """Book the shipment once an order is paid. Failures are logged only."""
        if (order.meta or {}).get("shipping"):
            return
        try:
            result = await booking.create_booking(order)
        except ShippingError as e:
            logger.error(f"Shipping booking failed for {order.order_number}: {e.message}")
            return

        courier = result.get("courier") if isinstance(result.get("courier"), dict) else {}
        order.update_meta(shipping={
            "id": result.get("id"),
            "status": result.get("status"),
            "waybill_id": courier.get("waybill_id"),
            "tracking_id": courier.get("tracking_id"),
            "link": courier.get("link"),
            "created_at": now_utc().isoformat(),
        })
        order.shipping_order_id = result.get("id")
        await db.flush()
        await self.apply_status(db, order, OrderStatus.PROCESSING.value, "booking", {"shipping_order_id": result.get("id")})
        await db.commit()

    # ==========================================
    # 🛠️ Admin / system status update
    # ==========================================

    async def update_status(
        self,
        db: AsyncSession,
        order_id: str,
        status: str,
        actor: str,
        booking: ShippingBookingService,
        payment_data: Optional[Dict[str, Any]] = None,
        shipping_data: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> Order:
        if status not in BASE_STATUSES:
            raise ValidationError(f"Invalid status. Allowed: {', '.join(BASE_STATUSES)}")

        order = await self.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found")

        stamp = {"updated_at": now_utc().isoformat(), "updated_by": actor}
        meta = dict(order.meta or {})
        if payment_data:
            meta["payment"] = {**(meta.get("payment") or {}), **payment_data, **stamp}
        if shipping_data:
            meta["shipping"] = {**(meta.get("shipping") or {}), **shipping_data, **stamp}
        if payment_data or shipping_data:
            order.meta = meta
            await db.flush()

        changed = await self.apply_status(db, order, status, f"admin:{actor}", force=force)
        await db.commit()

        if changed and status == OrderStatus.PAID.value:
            await self.on_paid(db, order, booking)
        return order

    # ==========================================
    # 🔍 Queries
    # ==========================================

    async def get_order(self, db: AsyncSession, order_id: str) -> Optional[Order]:
        return await db.get(Order, order_id)

    async def get_order_by_number(self, db: AsyncSession, order_number: str) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.order_number == order_number))
        return result.scalar_one_or_none()

    async def get_order_by_shipping_id(self, db: AsyncSession, shipping_order_id: str) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.shipping_order_id == shipping_order_id))
        return result.scalar_one_or_none()

    async def get_order_for_user(self, db: AsyncSession, order_id: str, user) -> Order:
        """Owner or admin; everyone else gets 404."""
        order = await self.get_order(db, order_id)
        if not order or (order.user_id != user.id and not user.is_admin):
            raise NotFoundError("Order not found")
        return order

    def order_detail(self, order: Order) -> Dict[str, Any]:
        meta = public_metadata(order)
        shipping = meta.get("shipping") or {}
        data = serialize_order(order, include_items=True)
        data.update({
            "metadata": meta,
            "itemCount": sum(i.quantity for i in order.items),
            "hasShippingData": bool(shipping),
            "hasPaymentData": bool(meta.get("payment")),
            "isPending": order.status == OrderStatus.PENDING.value,
            "isPaid": order.status == OrderStatus.PAID.value,
            "isCompleted": order.status == OrderStatus.DELIVERED.value,
            "isCancelled": order.status == OrderStatus.CANCELLED.value,
            "trackingInfo": {
                "biteshipOrderId": shipping.get("id") or order.shipping_order_id,
                "trackingUrl": shipping.get("link"),
                "waybillId": shipping.get("waybill_id"),
            } if shipping or order.shipping_order_id else None,
        })
        return data

    # ==========================================
    # 📍 Tracking
    # ==========================================

    async def track(self, db: AsyncSession, order: Order, booking: ShippingBookingService) -> Dict[str, Any]:
        shipping_id = order.shipping_order_id or ((order.meta or {}).get("shipping") or {}).get("id")
        if not shipping_id:
            return {
                "order_number": order.order_number,
                "status": order.status,
                "message": "Shipping order not created yet",
                "tracking_data": None,
            }

        try:
            tracking = await booking.track(shipping_id)
        except ShippingError as e:
            logger.warning(f"Tracking lookup failed for {order.order_number}: {e.message}")
            tracking = None

        if not tracking:
            return {
                "order_number": order.order_number,
                "status": order.status,
                "message": "Unable to fetch tracking information",
                "tracking_data": None,
            }

        carrier_status = tracking.get("status")
        mapped = map_carrier_status(carrier_status)
        if mapped and await self.apply_status(db, order, mapped, "tracking", {"carrier_status": carrier_status}):
            await db.commit()

        courier = tracking.get("courier") if isinstance(tracking.get("courier"), dict) else {}
        return {
            "order_number": order.order_number,
            "status": order.status,
            "biteship_order_id": shipping_id,
            "tracking_id": courier.get("tracking_id") or courier.get("waybill_id") or tracking.get("waybill_id"),
            "courier": {
                "name": courier.get("company") or order.courier_name,
                "service": courier.get("type") or order.courier_service,
                "tracking_url": courier.get("link"),
            },
            "tracking_data": {
                "status": carrier_status,
                "status_description": describe_carrier_status(carrier_status),
                "created_at": tracking.get("created_at"),
                "updated_at": tracking.get("updated_at"),
                "pickup_time": tracking.get("pickup_time"),
                "delivered_time": tracking.get("delivered_time"),
                "history": courier.get("history") or tracking.get("history") or [],
            },
        }

    async def apply_carrier_status(
        self, db: AsyncSession, shipping_order_id: str, carrier_status: str, source: str = "webhook",
    ) -> Optional[Order]:
        """Carrier webhook entry point. Unknown bookings return None."""
        order = await self.get_order_by_shipping_id(db, shipping_order_id)
        if not order:
            return None
        mapped = map_carrier_status(carrier_status)
        if mapped and await self.apply_status(db, order, mapped, source, {"carrier_status": carrier_status}):
            await db.commit()
        return order


order_service = OrderService()
