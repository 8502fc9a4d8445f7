"""
Order Module - Pricing
=======================
Server-side pricing shared by the shipping quote endpoint and order
creation, so the quoted and the charged totals come from one code path.
Client-submitted prices and totals are never read.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import STORE_CONFIG, MIN_ORDER_TOTAL, MAX_ORDER_TOTAL, PAYMENT_CURRENCY_EXPONENT
from common.exceptions import ValidationError, InsufficientStockError
from common.helpers import money, to_decimal
from modules.catalog.models import Product
from modules.catalog.service import catalog_service
from modules.order.validation import OrderLine
from modules.shipping.schemas import PackageItem, ShippingRate, DEFAULT_PRODUCT_DIMENSIONS, DEFAULT_PARCEL
from modules.shipping.service import ShippingRateResolver


@dataclass
class PricedLine:
    product: Product
    quantity: int

    @property
    def unit_price(self) -> Decimal:
        return money(self.product.price)

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)

    def dimension(self, name: str) -> int:
        value = getattr(self.product, name)
        return int(value) if value else DEFAULT_PRODUCT_DIMENSIONS[name]

    def package_item(self) -> PackageItem:
        return PackageItem(
            quantity=self.quantity,
            weight=self.dimension("weight"),
            height=self.dimension("height"),
            length=self.dimension("length"),
            width=self.dimension("width"),
            value=float(self.unit_price),
            name=self.product.name,
        )


@dataclass
class Quote:
    lines: List[PricedLine]
    subtotal: Decimal
    rates: List[ShippingRate]
    package_items: List[PackageItem] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return sum(p.quantity for p in self.package_items)


@dataclass
class OrderTotals:
    subtotal: Decimal
    shipping_cost: Decimal
    insurance: Decimal
    total: Decimal


async def price_lines(db: AsyncSession, lines: List[OrderLine], check_stock: bool = True) -> List[PricedLine]:
    """Re-read products; unknown ids are 400, short stock is 409."""
    products = await catalog_service.get_products_map(db, [l.product_id for l in lines])
    missing = [str(l.product_id) for l in lines if l.product_id not in products]
    if missing:
        raise ValidationError(f"Products not found: {', '.join(missing)}")

    priced = []
    for line in lines:
        product = products[line.product_id]
        if check_stock and product.stock < line.quantity:
            raise InsufficientStockError(product.name, product.stock, line.quantity)
        priced.append(PricedLine(product=product, quantity=line.quantity))
    return priced


async def build_quote(
    db: AsyncSession,
    resolver: ShippingRateResolver,
    destination_postal: str,
    lines: List[OrderLine],
    check_stock: bool = True,
) -> Quote:
    """Subtotal + fresh carrier rates for the store -> destination route."""
    priced = await price_lines(db, lines, check_stock=check_stock) if lines else []
    subtotal = money(sum((p.line_total for p in priced), Decimal("0")))

    if priced:
        package_items = [p.package_item() for p in priced]
    else:
        package_items = [PackageItem(name="Default Item", **DEFAULT_PARCEL)]

    rates = await resolver.calculate_shipping_rates(STORE_CONFIG["postal_code"], destination_postal, package_items)
    return Quote(lines=priced, subtotal=subtotal, rates=rates, package_items=package_items)


def select_rate(rates: List[ShippingRate], courier_name: str, courier_service: str) -> ShippingRate:
    """
    Match the client's selection against freshly quoted rates.
    Courier by name or code, service by service code or name (case-insensitive).
    """
    courier = courier_name.strip().lower()
    service = courier_service.strip().lower()
    for rate in rates:
        courier_ok = courier in (rate.courier_name.lower(), rate.courier_code.lower())
        service_ok = service in (rate.courier_service_code.lower(), rate.courier_service_name.lower())
        if courier_ok and service_ok:
            return rate
    raise ValidationError("Selected shipping method not available")


def check_total_bounds(total: Decimal):
    if total < MIN_ORDER_TOTAL or total > MAX_ORDER_TOTAL:
        raise ValidationError("Invalid order total")


def to_currency(value) -> Decimal:
    """Round to the smallest unit the payment gateway can charge, stored at 2 dp."""
    quantum = Decimal(1).scaleb(-PAYMENT_CURRENCY_EXPONENT)
    return money(to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def compute_totals(subtotal: Decimal, rate: Optional[ShippingRate]) -> OrderTotals:
    """Every amount is chargeable as-is, so the gateway bills exactly `total`."""
    subtotal = to_currency(subtotal)
    shipping = to_currency(rate.price if rate else 0)
    insurance = to_currency(rate.insurance_fee if rate else 0)
    total = money(subtotal + shipping + insurance)
    check_total_bounds(total)
    return OrderTotals(subtotal=subtotal, shipping_cost=shipping, insurance=insurance, total=total)
