"""
Midtrans Snap Gateway
======================
REST/JSON with HTTP basic auth (server key as username).
Sandbox unless MIDTRANS_IS_PRODUCTION=true.
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from config.settings import (
    MIDTRANS_SERVER_KEY, MIDTRANS_IS_PRODUCTION, MIDTRANS_ENABLED_PAYMENTS,
    PAYMENT_EXPIRY_HOURS, UPSTREAM_TIMEOUT,
)
from common.helpers import WIB
from common.security import constant_time_equals
from modules.payment.gateways import (
    BaseGateway, GatewayPaymentRequest, GatewayCreateResult,
    GatewayNotification, register_gateway,
)

logger = logging.getLogger("toko.gateway.midtrans")

SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
SNAP_PRODUCTION_URL = "https://app.midtrans.com/snap/v1/transactions"

PAID_STATUSES = {"settlement"}
FAILED_STATUSES = {"deny", "cancel", "expire", "failure"}


def format_start_time(moment: Optional[datetime] = None) -> str:
    """'YYYY-MM-DD HH:MM:SS +0700' in WIB."""
    moment = (moment or datetime.now(WIB)).astimezone(WIB)
    return moment.strftime("%Y-%m-%d %H:%M:%S %z")


class MidtransGateway(BaseGateway):
    name = "midtrans"
    label = "Midtrans Snap"

    def __init__(
        self,
        server_key: str = MIDTRANS_SERVER_KEY,
        is_production: bool = MIDTRANS_IS_PRODUCTION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = server_key
        self.snap_url = SNAP_PRODUCTION_URL if is_production else SNAP_SANDBOX_URL
        self.transport = transport

    def build_parameter(self, req: GatewayPaymentRequest) -> Dict[str, Any]:
        c = req.customer
        return {
            "transaction_details": {"order_id": req.order_ref, "gross_amount": req.gross_amount},
            "customer_details": {
                "first_name": c.first_name,
                "last_name": c.last_name,
                "email": c.email,
                "phone": c.phone,
                "shipping_address": {
                    "first_name": c.first_name,
                    "last_name": c.last_name,
                    "email": c.email,
                    "phone": c.phone,
                    "address": c.address,
                    "city": c.city,
                    "postal_code": c.postal_code,
                },
            },
            "item_details": [
                {
                    "id": it.id,
                    "price": it.price,
                    "quantity": it.quantity,
                    "name": it.name[:50],
                    "category": it.category[:50],
                }
                for it in req.items
            ],
            "enabled_payments": MIDTRANS_ENABLED_PAYMENTS,
            "credit_card": {"secure": True},
            "expiry": {"start_time": format_start_time(), "unit": "hours", "duration": PAYMENT_EXPIRY_HOURS},
            "callbacks": req.callbacks,
        }

    async def create_payment(self, req: GatewayPaymentRequest) -> GatewayCreateResult:
        try:
            async with httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT, transport=self.transport) as client:
                resp = await client.post(
                    self.snap_url,
                    json=self.build_parameter(req),
                    auth=(self.server_key, ""),
                    headers={"Accept": "application/json"},
                )
            data = resp.json()
            logger.info(f"Midtrans create [{req.order_ref}]: HTTP {resp.status_code}")
            if not isinstance(data, dict):
                logger.warning(f"Midtrans returned a non-object body [{req.order_ref}]: {str(data)[:200]}")
                return GatewayCreateResult(success=False, error_message="Payment gateway error")

            if resp.status_code in (200, 201) and data.get("token"):
                return GatewayCreateResult(
                    success=True,
                    token=data["token"],
                    redirect_url=data.get("redirect_url"),
                )
            logger.warning(f"Midtrans rejected [{req.order_ref}]: {str(data)[:500]}")
            messages = data.get("error_messages") or ["unknown error"]
            return GatewayCreateResult(success=False, error_message=f"Gateway error: {messages[0]}")

        except httpx.TimeoutException:
            return GatewayCreateResult(success=False, error_message="Payment gateway timeout")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Midtrans create failed: {e}")
            return GatewayCreateResult(success=False, error_message="Payment gateway unavailable")

    def notification_signature(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode("utf-8")).hexdigest()

    def parse_notification(self, payload: Dict[str, Any]) -> GatewayNotification:
        order_id = str(payload.get("order_id") or "")
        expected = self.notification_signature(
            order_id, str(payload.get("status_code") or ""), str(payload.get("gross_amount") or ""),
        )
        if not constant_time_equals(expected, payload.get("signature_key")):
            logger.warning(f"Midtrans notification with bad signature for {order_id}")
            return GatewayNotification(valid=False, order_ref=order_id, raw=payload)

        tx_status = str(payload.get("transaction_status") or "")
        fraud_status = str(payload.get("fraud_status") or "")

        order_status = None
        if tx_status == "capture":
            order_status = "paid" if fraud_status in ("", "accept") else None
        elif tx_status in PAID_STATUSES:
            order_status = "paid"
        elif tx_status in FAILED_STATUSES:
            order_status = "failed"

        return GatewayNotification(
            valid=True,
            order_ref=order_id,
            order_status=order_status,
            gateway_status=tx_status,
            raw=payload,
        )


register_gateway(MidtransGateway())
