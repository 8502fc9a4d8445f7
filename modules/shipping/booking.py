"""
Shipping Module - Booking Adapter
==================================
Creates carrier bookings for paid orders and reads their tracking state.
Also owns the carrier-status -> order-status mapping used by tracking
polls and the carrier webhook.
"""

import logging
from typing import Any, Dict, Optional

from config.settings import STORE_CONFIG
from common.exceptions import ShippingUpstreamError
from common.helpers import to_decimal
from modules.shipping.client import BiteshipClient
from modules.shipping.schemas import (
    PackageItem, DEFAULT_PRODUCT_DIMENSIONS, calculate_package_dimensions,
)

logger = logging.getLogger("toko.shipping.booking")

CARRIER_STATUS_MAP = {
    "confirmed": "processing",
    "allocated": "pickup_scheduled",
    "picking_up": "pickup_scheduled",
    "picked": "shipped",
    "dropping_off": "out_for_delivery",
    "delivered": "delivered",
    "cancelled": "cancelled",
    "rejected": "failed",
}

CARRIER_STATUS_DESCRIPTIONS = {
    "confirmed": "Pesanan dikonfirmasi, menunggu penjemputan",
    "allocated": "Kurir dialokasikan untuk penjemputan",
    "picking_up": "Kurir sedang menuju lokasi penjemputan",
    "picked": "Paket telah dijemput kurir",
    "dropping_off": "Paket sedang dalam perjalanan ke tujuan",
    "delivered": "Paket telah diterima",
    "cancelled": "Pengiriman dibatalkan",
    "rejected": "Pengiriman ditolak",
    "returned": "Paket dikembalikan ke pengirim",
}


def map_carrier_status(carrier_status: Optional[str]) -> Optional[str]:
    return CARRIER_STATUS_MAP.get((carrier_status or "").lower())


def describe_carrier_status(carrier_status: Optional[str]) -> str:
    return CARRIER_STATUS_DESCRIPTIONS.get(carrier_status or "", carrier_status or "")


def _clip(value: Optional[str], limit: int) -> str:
    return (value or "").strip()[:limit]


class ShippingBookingService:

    def __init__(self, client: Optional[BiteshipClient] = None):
        self.client = client or BiteshipClient()

    def build_booking_request(self, order) -> Dict[str, Any]:
        """Booking body from an order and its frozen items."""
        package = calculate_package_dimensions([
            PackageItem(
                quantity=item.quantity,
                weight=item.weight or DEFAULT_PRODUCT_DIMENSIONS["weight"],
                height=item.height or DEFAULT_PRODUCT_DIMENSIONS["height"],
                length=item.length or DEFAULT_PRODUCT_DIMENSIONS["length"],
                width=item.width or DEFAULT_PRODUCT_DIMENSIONS["width"],
                value=float(to_decimal(item.price)),
            )
            for item in order.items
        ])

        body = {
            "origin_contact_name": _clip(order.shipper_name, 100),
            "origin_contact_phone": _clip(order.shipper_phone, 20),
            "origin_contact_email": _clip(order.shipper_email, 100),
            "origin_address": _clip(order.origin_address, 500),
            "origin_note": _clip(order.origin_note, 200),
            "origin_postal_code": int(order.origin_postal_code),

            "destination_contact_name": _clip(order.recipient_name, 100),
            "destination_contact_phone": _clip(order.recipient_phone, 20),
            "destination_contact_email": _clip(order.recipient_email, 100),
            "destination_address": _clip(order.recipient_address, 500),
            "destination_postal_code": int(order.recipient_postal_code),
            "destination_note": _clip(order.order_note, 200),

            "courier_company": order.courier_name.lower(),
            "courier_type": order.courier_service,
            "delivery_type": order.delivery_type or "now",

            "items": [{
                "name": "Package",
                "description": f"Order {order.order_number} from {STORE_CONFIG['name']}",
                "category": "general",
                "value": package.value,
                "weight": package.weight,
                "height": package.height,
                "length": package.length,
                "width": package.width,
                "quantity": 1,
            }],
            "reference_id": order.order_number,
        }

        insurance = to_decimal(order.courier_insurance)
        if insurance > 0:
            body["courier_insurance"] = int(round(insurance))
        return body

    async def create_booking(self, order) -> Dict[str, Any]:
        """POST /orders. Raises ShippingError on failure."""
        data = await self.client.post("/orders", self.build_booking_request(order), stage="booking")
        if data.get("success") is False:
            raise ShippingUpstreamError("Shipping booking rejected", stage="booking")
        logger.info(f"Booked shipment {data.get('id')} for {order.order_number}")
        return data

    async def track(self, shipping_order_id: str) -> Optional[Dict[str, Any]]:
        data = await self.client.get(f"/orders/{shipping_order_id}", stage="tracking")
        if data.get("success") is False:
            return None
        return data

    async def get_label_url(self, shipping_order_id: str) -> Optional[str]:
        data = await self.track(shipping_order_id)
        if not data:
            return None
        courier = data.get("courier") if isinstance(data.get("courier"), dict) else {}
        return data.get("label_url") or courier.get("label_url") or None


booking_service = ShippingBookingService()


def get_booking_service() -> ShippingBookingService:
    return booking_service
