"""Tests for the payment service and the Midtrans gateway."""

import asyncio
import base64
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from common.exceptions import PaymentError
from modules.payment.gateways import get_gateway
from modules.payment.gateways.midtrans import MidtransGateway
from modules.payment.service import PaymentService, split_name, to_minor_units

SERVER_KEY = "SB-Mid-server-test"


def _order(total="298502.00", insurance="2500.00", items=None):
    items = items or [
        SimpleNamespace(product_id=1, name="Kopi Arabika 250g", price=Decimal("85000.00"), quantity=2, category="kopi"),
        SimpleNamespace(product_id=2, name="Teh Melati 100g", price=Decimal("32000.50"), quantity=3, category=None),
    ]
    return SimpleNamespace(
        id="01HZX5J3Q9V8K2M4N6P7R8S9T0",
        order_number="ORD-12345678-ABC123",
        total=Decimal(total),
        shipping_cost=Decimal("30000.00"),
        courier_insurance=Decimal(insurance),
        courier_name="JNE",
        courier_service="yes",
        recipient_name="Siti Nur Rahma",
        recipient_email="siti@example.com",
        recipient_phone="081234567890",
        recipient_address="Jl. Asia Afrika No. 8",
        recipient_city="Bandung",
        recipient_postal_code="40115",
        items=items,
    )


def _notification(gateway, **overrides):
    payload = {
        "order_id": "ORD-12345678-ABC123",
        "status_code": "200",
        "gross_amount": "298502.00",
        "transaction_status": "settlement",
        "transaction_id": "tx-1",
        "payment_type": "bank_transfer",
    }
    payload.update(overrides)
    payload["signature_key"] = gateway.notification_signature(
        payload["order_id"], payload["status_code"], payload["gross_amount"],
    )
    return payload


class TestAmounts:
    @pytest.mark.parametrize("amount, expected", [
        ("150000.00", 150000),
        ("150000.49", 150000),
        ("150000.50", 150001),
        (Decimal("0.5"), 1),
        (None, 0),
    ])
    def test_to_minor_units(self, amount, expected):
        assert to_minor_units(amount) == expected

    def test_two_decimal_currency(self):
        assert to_minor_units("12.345", exponent=2) == 1235

    def test_split_name(self):
        assert split_name("Siti Nur Rahma") == ("Siti", "Nur Rahma")
        assert split_name("Budi") == ("Budi", "")
        assert split_name("") == ("", "")


class TestBuildRequest:
    def test_lines_sum_to_gross_amount(self):
        order = _order()
        req = PaymentService(gateway=MidtransGateway(server_key=SERVER_KEY)).build_request(order)
        assert req.gross_amount == 298502
        assert Decimal(req.gross_amount) == order.total
        assert sum(l.price * l.quantity for l in req.items) == req.gross_amount
        ids = [l.id for l in req.items]
        assert ids == ["1", "2", "SHIPPING", "INSURANCE", "ROUNDING"]
        assert req.items[-1].price == -1

    def test_no_rounding_line_when_exact(self):
        items = [SimpleNamespace(product_id=1, name="Kopi", price=Decimal("85000.00"), quantity=2, category="kopi")]
        order = _order(total="200000.00", insurance="0", items=items)
        req = PaymentService(gateway=MidtransGateway(server_key=SERVER_KEY)).build_request(order)
        assert [l.id for l in req.items] == ["1", "SHIPPING"]

    def test_reference_and_callbacks(self):
        order = _order()
        req = PaymentService(gateway=MidtransGateway(server_key=SERVER_KEY)).build_request(order)
        assert req.order_ref == order.order_number
        assert req.customer.first_name == "Siti"
        assert req.callbacks["finish"].endswith(f"/orders/{order.id}/payment-success")
        assert req.callbacks["pending"].endswith(f"/orders/{order.id}/payment-pending")

    def test_total_not_chargeable_without_drift(self):
        with pytest.raises(PaymentError) as exc:
            PaymentService(gateway=MidtransGateway(server_key=SERVER_KEY)).build_request(_order(total="298501.50"))
        assert exc.value.status_code == 400

    def test_out_of_bounds_total(self):
        with pytest.raises(PaymentError) as exc:
            PaymentService(gateway=MidtransGateway(server_key=SERVER_KEY)).build_request(_order(total="10"))
        assert exc.value.status_code == 400


class TestCreatePayment:
    def test_snap_request(self, snap, payments):
        result = asyncio.run(payments.create_payment(_order()))
        assert result == {
            "token": "snap-token-1",
            "redirect_url": "https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token-1",
        }
        request = snap.requests[0]
        expected_auth = base64.b64encode(f"{SERVER_KEY}:".encode()).decode()
        assert request.headers["authorization"] == f"Basic {expected_auth}"
        body = snap.last_body
        assert body["transaction_details"] == {"order_id": "ORD-12345678-ABC123", "gross_amount": 298502}
        assert body["customer_details"]["shipping_address"]["postal_code"] == "40115"
        assert body["expiry"]["unit"] == "hours"

    def test_gateway_error(self, snap, payments):
        snap.fail = True
        with pytest.raises(PaymentError) as exc:
            asyncio.run(payments.create_payment(_order()))
        assert exc.value.message == "Gateway error: Snap is down"

    def test_gateway_unreachable(self):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = MidtransGateway(server_key=SERVER_KEY, transport=httpx.MockTransport(boom))
        with pytest.raises(PaymentError, match="Payment gateway unavailable"):
            asyncio.run(PaymentService(gateway=gateway).create_payment(_order()))

    @pytest.mark.parametrize("body", ["[]", "null", "42"])
    def test_non_object_body(self, snap, payments, body):
        snap.raw_body = body
        with pytest.raises(PaymentError, match="Payment gateway error"):
            asyncio.run(payments.create_payment(_order()))

    def test_unexpected_gateway_exception(self):
        class BrokenGateway(MidtransGateway):
            async def create_payment(self, req):
                raise KeyError("token")

        with pytest.raises(PaymentError, match="Payment gateway error"):
            asyncio.run(PaymentService(gateway=BrokenGateway(server_key=SERVER_KEY)).create_payment(_order()))

    def test_default_gateway_is_registered(self):
        assert PaymentService().gateway is get_gateway("midtrans")


class TestNotification:
    @pytest.mark.parametrize("tx_status, fraud, expected", [
        ("settlement", None, "paid"),
        ("capture", "accept", "paid"),
        ("capture", "challenge", None),
        ("pending", None, None),
        ("deny", None, "failed"),
        ("cancel", None, "failed"),
        ("expire", None, "failed"),
        ("failure", None, "failed"),
    ])
    def test_status_mapping(self, tx_status, fraud, expected):
        gateway = MidtransGateway(server_key=SERVER_KEY)
        overrides = {"transaction_status": tx_status}
        if fraud:
            overrides["fraud_status"] = fraud
        parsed = gateway.parse_notification(_notification(gateway, **overrides))
        assert parsed.valid
        assert parsed.order_status == expected
        assert parsed.gateway_status == tx_status

    def test_bad_signature(self):
        gateway = MidtransGateway(server_key=SERVER_KEY)
        payload = _notification(gateway)
        payload["gross_amount"] = "1000.00"
        parsed = gateway.parse_notification(payload)
        assert parsed.valid is False

    def test_signed_with_other_key(self):
        other = MidtransGateway(server_key="another-key")
        parsed = MidtransGateway(server_key=SERVER_KEY).parse_notification(_notification(other))
        assert parsed.valid is False
