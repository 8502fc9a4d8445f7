"""
Payment Gateway Abstraction
=============================
Each gateway implements create_payment() and parse_notification().
Registry pattern for gateway lookup by name.
"""

import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field

logger = logging.getLogger("toko.gateway")


@dataclass
class GatewayLineItem:
    id: str
    name: str
    price: int              # minor units, per unit
    quantity: int
    category: str = "general"


@dataclass
class GatewayCustomer:
    first_name: str
    last_name: str
    email: str
    phone: str
    address: str = ""
    city: str = ""
    postal_code: str = ""


@dataclass
class GatewayPaymentRequest:
    """Input for creating a hosted payment session."""
    order_ref: str              # order number shown to the gateway
    order_id: str               # internal id, used in callback URLs
    gross_amount: int           # minor units
    customer: GatewayCustomer
    items: List[GatewayLineItem] = field(default_factory=list)
    callbacks: Dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayCreateResult:
    """Result of create_payment()."""
    success: bool
    token: Optional[str] = None
    redirect_url: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class GatewayNotification:
    """Result of parse_notification()."""
    valid: bool
    order_ref: str = ""
    order_status: Optional[str] = None   # paid / failed / None (no change)
    gateway_status: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


class BaseGateway:
    """Abstract gateway interface."""
    name: str = ""
    label: str = ""

    async def create_payment(self, req: GatewayPaymentRequest) -> GatewayCreateResult:
        raise NotImplementedError

    def parse_notification(self, payload: Dict[str, Any]) -> GatewayNotification:
        raise NotImplementedError


# ── Registry ──

_GATEWAYS: Dict[str, BaseGateway] = {}


def register_gateway(gw: BaseGateway):
    _GATEWAYS[gw.name] = gw


def get_gateway(name: str) -> Optional[BaseGateway]:
    return _GATEWAYS.get(name)
