"""
Order Module - Models
======================
Order with a frozen snapshot per item for audit trail.
Money columns are NUMERIC(12,2) and handled as Decimal end to end.
"""

import enum
import secrets
import string

from sqlalchemy import (
    Column, Integer, String, Numeric, Text, JSON,
    ForeignKey, DateTime,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ulid import ULID

from config.database import Base
from common.helpers import now_ms, now_utc


def generate_order_id() -> str:
    """26-char ULID (time sortable)."""
    return str(ULID())


def generate_order_number() -> str:
    """ORD-<last 8 digits of epoch ms>-<6 random uppercase alnum>."""
    chars = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(chars) for _ in range(6))
    return f"ORD-{str(now_ms())[-8:]}-{suffix}"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    PICKUP_SCHEDULED = "pickup_scheduled"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Statuses accepted from clients (filters, admin updates)
BASE_STATUSES = ["pending", "paid", "processing", "shipped", "delivered", "cancelled", "failed"]

# Forward-only ordering; terminal statuses sit outside it
STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.PICKUP_SCHEDULED: 3,
    OrderStatus.SHIPPED: 4,
    OrderStatus.OUT_FOR_DELIVERY: 5,
    OrderStatus.DELIVERED: 6,
}
TERMINAL_STATUSES = {OrderStatus.CANCELLED, OrderStatus.FAILED, OrderStatus.DELIVERED}

# Cancel is allowed only while stock is still held for the order
CANCELLABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.PROCESSING}


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(26), primary_key=True, default=generate_order_id)
    order_number = Column(String(32), unique=True, nullable=False, index=True, default=generate_order_number)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False)
    courier_insurance = Column(Numeric(12, 2), default=0, nullable=False)
    total = Column(Numeric(12, 2), nullable=False)

    # Recipient
    recipient_name = Column(String(100), nullable=False)
    recipient_phone = Column(String(20), nullable=False)
    recipient_email = Column(String(255), nullable=False)
    recipient_address = Column(Text, nullable=False)
    recipient_city = Column(String(100), nullable=False)
    recipient_province = Column(String(100), nullable=False)
    recipient_postal_code = Column(String(5), nullable=False)

    # Shipper (store) block, copied from STORE_CONFIG at creation
    shipper_name = Column(String(100), nullable=False)
    shipper_phone = Column(String(20), nullable=False)
    shipper_email = Column(String(255), nullable=True)
    origin_address = Column(Text, nullable=False)
    origin_note = Column(Text, nullable=True)
    origin_postal_code = Column(String(5), nullable=False)

    # Courier
    courier_name = Column(String(100), nullable=False)
    courier_service = Column(String(100), nullable=False)
    delivery_type = Column(String(20), default="now", nullable=False)
    order_note = Column(Text, nullable=True)
    shipping_order_id = Column(String(64), nullable=True, index=True)  # carrier booking id

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=now_utc, server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=now_utc, server_default=func.now(), onupdate=now_utc, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")

    def update_meta(self, **updates):
        """Reassign the JSON column so SQLAlchemy sees the change."""
        merged = dict(self.meta or {})
        merged.update(updates)
        self.meta = merged

    @property
    def status_label(self) -> str:
        labels = {
            OrderStatus.PENDING.value: "Menunggu Pembayaran",
            OrderStatus.PAID.value: "Dibayar",
            OrderStatus.PROCESSING.value: "Diproses",
            OrderStatus.PICKUP_SCHEDULED.value: "Menunggu Pickup",
            OrderStatus.SHIPPED.value: "Dikirim",
            OrderStatus.OUT_FOR_DELIVERY.value: "Dalam Pengantaran",
            OrderStatus.DELIVERED.value: "Diterima",
            OrderStatus.CANCELLED.value: "Dibatalkan",
            OrderStatus.FAILED.value: "Gagal",
        }
        return labels.get(self.status, self.status)

    def __repr__(self):
        return f"<Order {self.order_number} {self.status}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(26), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    # No FK: the snapshot must survive product deletion
    product_id = Column(Integer, nullable=False, index=True)

    # Snapshot at time of purchase
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    weight = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    length = Column(Integer, nullable=False)
    width = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
