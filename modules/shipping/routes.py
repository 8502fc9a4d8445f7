"""
Shipping Routes
================
Rate quotes, area lookup / courier coverage, and the carrier webhook.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Request, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import STORE_CONFIG, WEBHOOK_SECRET
from common.exceptions import AuthenticationError, ValidationError
from common.security import rate_limit, hmac_sha256_hex, constant_time_equals
from modules.order.pricing import build_quote
from modules.order.service import order_service
from modules.order.validation import parse_quote_items
from modules.shipping.schemas import Area, is_valid_postal_code
from modules.shipping.service import ShippingRateResolver, get_shipping_resolver

logger = logging.getLogger("toko.shipping")

router = APIRouter(tags=["shipping"])


class CoverageRequest(BaseModel):
    origin_area_id: str = Field(..., min_length=1, max_length=100)
    destination_area_id: str = Field(..., min_length=1, max_length=100)


# ==========================================
# 💸 Rate Quote
# ==========================================

@router.get("/api/shipping", dependencies=[Depends(rate_limit("shipping"))])
async def get_shipping_rates(
    destinationPostal: Optional[str] = None,
    items: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    resolver: ShippingRateResolver = Depends(get_shipping_resolver),
):
    if not destinationPostal:
        raise ValidationError("Destination postal code is required")
    if not is_valid_postal_code(destinationPostal):
        raise ValidationError("Invalid postal code format. Please use 5-digit postal code.")

    lines = parse_quote_items(items)
    quote = await build_quote(db, resolver, destinationPostal, lines, check_stock=False)

    total_weight = sum(max(int(p.weight or 0), 100) * p.quantity for p in quote.package_items)
    total_value = sum(int(p.value or 0) * p.quantity for p in quote.package_items)

    return {
        "success": True,
        "data": [r.to_dict() for r in quote.rates],
        "store_info": {
            "name": STORE_CONFIG["name"],
            "city": STORE_CONFIG["city"],
            "province": STORE_CONFIG["province"],
            "postal_code": STORE_CONFIG["postal_code"],
        },
        "request_info": {
            "destination_postal": destinationPostal,
            "total_items": quote.total_items,
            "total_weight": total_weight,
            "total_value": total_value,
        },
    }


# ==========================================
# 🗺️ Areas
# ==========================================

@router.get("/api/areas", dependencies=[Depends(rate_limit("shipping"))])
async def get_areas(
    postal_code: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 10,
    resolver: ShippingRateResolver = Depends(get_shipping_resolver),
):
    if postal_code:
        if not is_valid_postal_code(postal_code):
            raise ValidationError("Invalid postal code format. Please use 5-digit postal code.")
        area = await resolver.get_area_by_postal_code(postal_code)
        if not area:
            # Placeholder so checkout forms can still proceed
            area = Area(id="", name=f"Postal Code {postal_code}", postal_code=postal_code)
            return {"success": True, "data": [area.to_dict()], "found": False}
        return {"success": True, "data": [area.to_dict()], "found": True}

    if search:
        keyword = search.strip()
        if len(keyword) < 3:
            raise ValidationError("Search keyword must be at least 3 characters")
        limit = min(max(limit, 1), 50)
        areas = await resolver.search_areas(keyword, limit)
        return {"success": True, "data": [a.to_dict() for a in areas]}

    raise ValidationError("postal_code or search is required")


@router.post("/api/areas", dependencies=[Depends(rate_limit("shipping"))])
async def check_courier_coverage(
    body: CoverageRequest,
    resolver: ShippingRateResolver = Depends(get_shipping_resolver),
):
    couriers = await resolver.get_available_couriers(body.origin_area_id, body.destination_area_id)
    return {"success": True, "data": couriers}


# ==========================================
# 🔔 Carrier Webhook
# ==========================================

@router.post("/api/shipping/webhook")
async def shipping_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Carrier status push. Signed with HMAC-SHA256(WEBHOOK_SECRET, raw body)."""
    raw = await request.body()
    signature = request.headers.get("x-signature")
    if not WEBHOOK_SECRET or not constant_time_equals(
        hmac_sha256_hex(WEBHOOK_SECRET, raw.decode("utf-8", errors="replace")), signature,
    ):
        logger.warning("Carrier webhook with invalid signature")
        raise AuthenticationError("Invalid signature")

    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON body")

    shipping_order_id = payload.get("order_id") or payload.get("id")
    carrier_status = payload.get("status")
    if not shipping_order_id or not carrier_status:
        # Installation pings carry no order
        return {"success": True, "message": "ignored"}

    order = await order_service.apply_carrier_status(db, str(shipping_order_id), str(carrier_status))
    if not order:
        logger.info(f"Webhook for unknown shipment {shipping_order_id}")
        return {"success": True, "message": "ignored"}
    return {"success": True, "message": "Webhook processed", "status": order.status}
