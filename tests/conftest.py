"""Pytest fixtures for the storefront tests."""

import asyncio
import json
import os
import tempfile
from decimal import Decimal

# Settings are read at import time; configure before any app import.
_TMP_DIR = tempfile.mkdtemp(prefix="toko-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CSRF_ENABLED"] = "true"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["MIDTRANS_SERVER_KEY"] = "SB-Mid-server-test"
os.environ["ALLOWED_ORIGINS"] = ""
os.environ["STORE_POSTAL_CODE"] = "12110"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from config.database import Base, SessionLocal, engine  # noqa: E402
from common.helpers import now_utc  # noqa: E402
from common.security import issue_session, rate_limiter, SESSION_COOKIE, CSRF_HEADER  # noqa: E402
from modules.catalog.models import Product  # noqa: E402
from modules.order.models import Order, OrderItem  # noqa: E402
from modules.payment.gateways.midtrans import MidtransGateway  # noqa: E402
from modules.payment.service import PaymentService, get_payment_service  # noqa: E402
from modules.shipping.booking import ShippingBookingService, get_booking_service  # noqa: E402
from modules.shipping.client import BiteshipClient  # noqa: E402
from modules.shipping.service import ShippingRateResolver, get_shipping_resolver  # noqa: E402
from modules.user.models import User, UserRole  # noqa: E402

SERVER_KEY = "SB-Mid-server-test"
WEBHOOK_SECRET = "test-webhook-secret"


# ==========================================
# Fake upstreams
# ==========================================

AREAS = {
    "12110": {
        "id": "IDNP6IDNC148IDND836IDZ12110",
        "name": "Kebayoran Baru, Jakarta Selatan, DKI Jakarta. 12110",
        "country_code": "ID",
        "administrative_division_level_1_name": "DKI Jakarta",
        "administrative_division_level_2_name": "Jakarta Selatan",
        "administrative_division_level_3_name": "Kebayoran Baru",
        "postal_code": 12110,
    },
    "40115": {
        "id": "IDNP9IDNC22IDND283IDZ40115",
        "name": "Sumur Bandung, Bandung, Jawa Barat. 40115",
        "country_code": "ID",
        "administrative_division_level_1_name": "Jawa Barat",
        "administrative_division_level_2_name": "Bandung",
        "administrative_division_level_3_name": "Sumur Bandung",
        "postal_code": 40115,
    },
}

PRICING = [
    {
        "courier_name": "SiCepat", "courier_code": "sicepat",
        "courier_service_name": "Reguler", "courier_service_code": "reg",
        "price": 18000, "duration": "2 - 3 days",
    },
    {
        "courier_name": "JNE", "courier_code": "jne",
        "courier_service_name": "Reguler", "courier_service_code": "reg",
        "price": 15000, "duration": "1 - 2 days",
    },
    {
        "courier_name": "JNE", "courier_code": "jne",
        "courier_service_name": "YES", "courier_service_code": "yes",
        "price": 30000, "duration": "1 days", "insurance_fee": 2500,
    },
]


class FakeBiteship:
    """Answers the Biteship endpoints the app uses. Records every call."""

    def __init__(self):
        self.calls = []
        self.areas = dict(AREAS)
        self.pricing = list(PRICING)
        self.rates_status = 200
        self.fallback_pricing = []
        self.fallback_status = 200
        self.tracking_status = "picked"
        self.booking_body = None
        self.booking_fails = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))

        if path.endswith("/maps/areas"):
            area = self.areas.get(request.url.params.get("input"))
            return httpx.Response(200, json={"success": True, "areas": [area] if area else []})

        if path.endswith("/rates/couriers"):
            if self.rates_status != 200:
                return httpx.Response(self.rates_status, json={"success": False, "error": "upstream broke"})
            return httpx.Response(200, json={"success": True, "pricing": self.pricing})

        if path.endswith("/rates"):
            if self.fallback_status != 200:
                return httpx.Response(self.fallback_status, text="bad gateway")
            return httpx.Response(200, json={"success": True, "pricing": self.fallback_pricing})

        if path.endswith("/couriers/check-coverage"):
            return httpx.Response(200, json={"success": True, "couriers": [{"courier_code": "jne"}]})

        if request.method == "POST" and path.endswith("/orders"):
            self.booking_body = body
            if self.booking_fails:
                return httpx.Response(500, json={"success": False, "error": "courier unavailable"})
            return httpx.Response(200, json={
                "success": True,
                "id": "bs-order-1",
                "status": "confirmed",
                "courier": {"waybill_id": "WB123", "tracking_id": "TR123", "link": "https://track.test/WB123"},
            })

        if request.method == "GET" and "/orders/" in path:
            return httpx.Response(200, json={
                "success": True,
                "id": path.rsplit("/", 1)[-1],
                "status": self.tracking_status,
                "courier": {
                    "company": "jne",
                    "type": "reg",
                    "waybill_id": "WB123",
                    "link": "https://track.test/WB123",
                    "history": [{"status": "confirmed"}, {"status": self.tracking_status}],
                },
                "label_url": "https://label.test/bs-order-1.pdf",
            })

        return httpx.Response(404, json={"success": False, "error": "not found"})

    def client(self) -> BiteshipClient:
        return BiteshipClient(
            api_key="test-key",
            base_url="https://biteship.test/v1",
            transport=httpx.MockTransport(self.handler),
        )

    def count(self, suffix: str) -> int:
        return sum(1 for _, path, _ in self.calls if path.endswith(suffix))


class FakeSnap:
    """Midtrans Snap transactions endpoint."""

    def __init__(self):
        self.requests = []
        self.fail = False
        self.raw_body = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            return httpx.Response(500, json={"error_messages": ["Snap is down"]})
        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body, headers={"Content-Type": "application/json"})
        return httpx.Response(201, json={
            "token": "snap-token-1",
            "redirect_url": "https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token-1",
        })

    @property
    def last_body(self) -> dict:
        return json.loads(self.requests[-1].content)


# ==========================================
# Async helpers
# ==========================================

def run(coro):
    return asyncio.run(coro)


async def _reset_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def database():
    """Fresh schema per test."""
    run(_reset_schema())
    yield


@pytest.fixture
def run_db(database):
    """Run `fn(db)` inside a fresh AsyncSession and return its result."""
    def _run(fn):
        async def _inner():
            async with SessionLocal() as db:
                return await fn(db)
        return run(_inner())
    return _run


# ==========================================
# Fakes wired into the app
# ==========================================

@pytest.fixture
def biteship():
    return FakeBiteship()


@pytest.fixture
def snap():
    return FakeSnap()


@pytest.fixture
def resolver(biteship):
    return ShippingRateResolver(client=biteship.client(), couriers="jne,sicepat")


@pytest.fixture
def gateway(snap):
    return MidtransGateway(server_key=SERVER_KEY, transport=httpx.MockTransport(snap.handler))


@pytest.fixture
def payments(gateway):
    return PaymentService(gateway=gateway)


@pytest.fixture
def booking(biteship):
    return ShippingBookingService(client=biteship.client())


@pytest.fixture
def client(database, resolver, payments, booking):
    from main import app

    app.dependency_overrides[get_shipping_resolver] = lambda: resolver
    app.dependency_overrides[get_payment_service] = lambda: payments
    app.dependency_overrides[get_booking_service] = lambda: booking
    yield TestClient(app)
    app.dependency_overrides.clear()


# ==========================================
# Data
# ==========================================

@pytest.fixture
def products(run_db):
    """slug -> id for a small catalog."""
    rows = [
        dict(name="Kopi Arabika 250g", slug="kopi-arabika", category="kopi",
             price=Decimal("85000.00"), stock=20, weight=260, height=5, length=18, width=10),
        dict(name="Teh Melati 100g", slug="teh-melati", category="teh",
             price=Decimal("32000.50"), stock=5, weight=110, height=4, length=12, width=8),
        dict(name="French Press", slug="french-press", category="alat",
             price=Decimal("189000.00"), stock=1),
    ]

    async def _seed(db):
        items = [Product(**r) for r in rows]
        db.add_all(items)
        await db.commit()
        return {p.slug: p.id for p in items}

    return run_db(_seed)


@pytest.fixture
def make_user(run_db):
    def _make(email="budi@example.com", role=UserRole.CUSTOMER, name="Budi Santoso"):
        async def _create(db):
            user = User(name=name, email=email, role=role, is_active=True)
            db.add(user)
            await db.commit()
            return user.id
        return run_db(_create)
    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role=UserRole.ADMIN, name="Admin Toko")


@pytest.fixture
def login(client):
    """Put a session cookie on the client; returns headers carrying the CSRF token."""
    def _login(user_id, role=UserRole.CUSTOMER):
        token, csrf = issue_session(user_id, role)
        client.cookies.set(SESSION_COOKIE, token)
        return {CSRF_HEADER: csrf}
    return _login


@pytest.fixture
def make_order(run_db):
    """Insert an order directly, bypassing checkout."""
    def _make(user_id, status="pending", total="100000.00", items=(), created_at=None, meta=None, **fields):
        async def _create(db):
            order = Order(
                user_id=user_id,
                subtotal=Decimal(total),
                shipping_cost=Decimal("0"),
                courier_insurance=Decimal("0"),
                total=Decimal(total),
                recipient_name=fields.get("recipient_name", "Budi Santoso"),
                recipient_phone="081234567890",
                recipient_email=fields.get("recipient_email", "budi@example.com"),
                recipient_address="Jl. Merdeka No. 10, Sumur Bandung",
                recipient_city="Bandung",
                recipient_province="Jawa Barat",
                recipient_postal_code="40115",
                shipper_name="Pemilik Toko",
                shipper_phone="08123456789",
                origin_address="Jl. Contoh No. 123",
                origin_postal_code="12110",
                courier_name="JNE",
                courier_service="reg",
                status=status,
                meta=meta or {"status_history": []},
                created_at=created_at or now_utc(),
                shipping_order_id=fields.get("shipping_order_id"),
            )
            order.items = [
                OrderItem(
                    product_id=product_id, name=f"Product {product_id}", price=Decimal("50000.00"),
                    quantity=quantity, weight=100, height=5, length=10, width=10,
                )
                for product_id, quantity in items
            ]
            db.add(order)
            await db.commit()
            return order.id
        return run_db(_create)
    return _make


@pytest.fixture
def checkout_body(products):
    return {
        "recipientName": "Budi Santoso",
        "phone": "0812-3456-7890",
        "email": "budi@example.com",
        "address": "Jl. Merdeka No. 10, Sumur Bandung",
        "city": "Bandung",
        "province": "Jawa Barat",
        "postalCode": "40115",
        "courierName": "JNE",
        "courierService": "reg",
        "items": [{"productId": products["kopi-arabika"], "quantity": 2}],
    }


async def fetch_order(db, order_id):
    return await db.get(Order, order_id)


async def fetch_stock(db, product_id):
    product = await db.get(Product, product_id)
    return product.stock
