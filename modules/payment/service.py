"""
Payment Service
=================
Builds a gateway payment request from a persisted order and its frozen
items. Amounts are converted from Decimal to integer minor units with
ROUND_HALF_UP; the line items always sum exactly to gross_amount.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from config.settings import (
    FRONTEND_URL, MIN_ORDER_TOTAL, MAX_ORDER_TOTAL, PAYMENT_CURRENCY_EXPONENT,
)
from common.exceptions import PaymentError
from common.helpers import to_decimal

# Import gateway modules to trigger register_gateway() calls
from modules.payment.gateways import (
    BaseGateway, GatewayCustomer, GatewayLineItem, GatewayPaymentRequest, get_gateway,
)
import modules.payment.gateways.midtrans  # noqa: F401

logger = logging.getLogger("toko.payment")

DEFAULT_GATEWAY = "midtrans"


def to_minor_units(amount, exponent: int = PAYMENT_CURRENCY_EXPONENT) -> int:
    """Decimal amount -> integer minor units (half up)."""
    scaled = to_decimal(amount) * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_name(full_name: str):
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0][:50], " ".join(parts[1:])[:50]


class PaymentService:

    def __init__(self, gateway: Optional[BaseGateway] = None):
        self._gateway = gateway

    @property
    def gateway(self) -> BaseGateway:
        return self._gateway or get_gateway(DEFAULT_GATEWAY)

    def callback_urls(self, order_id: str) -> Dict[str, str]:
        base = FRONTEND_URL.rstrip("/")
        return {
            "finish": f"{base}/orders/{order_id}/payment-success",
            "error": f"{base}/orders/{order_id}/payment-error",
            "pending": f"{base}/orders/{order_id}/payment-pending",
        }

    def build_line_items(self, order, gross_amount: int) -> List[GatewayLineItem]:
        """
        Order items + SHIPPING (+ INSURANCE). Per-unit rounding can make
        the lines drift from gross_amount; a ROUNDING line absorbs it.
        """
        lines = [
            GatewayLineItem(
                id=str(item.product_id),
                name=item.name,
                price=to_minor_units(item.price),
                quantity=item.quantity,
                category=item.category or "general",
            )
            for item in order.items
        ]
        lines.append(GatewayLineItem(
            id="SHIPPING",
            name=f"Shipping via {order.courier_name} {order.courier_service}",
            price=to_minor_units(order.shipping_cost),
            quantity=1,
            category="shipping",
        ))
        insurance = to_minor_units(order.courier_insurance)
        if insurance > 0:
            lines.append(GatewayLineItem(
                id="INSURANCE", name="Courier insurance", price=insurance, quantity=1, category="shipping",
            ))

        drift = gross_amount - sum(l.price * l.quantity for l in lines)
        if drift:
            lines.append(GatewayLineItem(id="ROUNDING", name="Rounding adjustment", price=drift, quantity=1, category="adjustment"))
        return lines

    def build_request(self, order) -> GatewayPaymentRequest:
        total = to_decimal(order.total)
        # Second, independent bounds check
        if total < MIN_ORDER_TOTAL or total > MAX_ORDER_TOTAL:
            raise PaymentError("Invalid payment amount", status_code=400)

        gross_amount = to_minor_units(total)
        if Decimal(gross_amount).scaleb(-PAYMENT_CURRENCY_EXPONENT) != total:
            raise PaymentError("Order total is not chargeable in the configured currency", status_code=400)
        first, last = split_name(order.recipient_name)
        return GatewayPaymentRequest(
            order_ref=order.order_number,
            order_id=order.id,
            gross_amount=gross_amount,
            customer=GatewayCustomer(
                first_name=first,
                last_name=last,
                email=order.recipient_email,
                phone=order.recipient_phone,
                address=order.recipient_address,
                city=order.recipient_city,
                postal_code=order.recipient_postal_code,
            ),
            items=self.build_line_items(order, gross_amount),
            callbacks=self.callback_urls(order.id),
        )

    async def create_payment(self, order) -> Dict[str, str]:
        """Returns {token, redirect_url}. Raises PaymentError."""
        gateway = self.gateway
        if gateway is None:
            raise PaymentError("No payment gateway configured")

        req = self.build_request(order)
        try:
            result = await gateway.create_payment(req)
        except Exception as e:
            logger.exception(f"Gateway {gateway.name} crashed creating payment for {order.order_number}")
            raise PaymentError("Payment gateway error") from e
        if not result.success:
            raise PaymentError(result.error_message or "Payment gateway error")
        return {"token": result.token, "redirect_url": result.redirect_url}


payment_service = PaymentService()


def get_payment_service() -> PaymentService:
    return payment_service
