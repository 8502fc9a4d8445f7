"""Tests for the customer's transaction history and cancel / reorder actions."""

from datetime import datetime, timedelta, timezone

import pytest

from common.exceptions import ConflictError, ValidationError
from config.database import SessionLocal
from modules.order.models import Order
from modules.transaction.service import escape_like, parse_transaction_query, period_range, transaction_service
from conftest import fetch_order, fetch_stock, run


class TestPeriodRange:
    def test_week_starts_on_sunday(self):
        wednesday = datetime(2026, 10, 21, 15, 30, tzinfo=timezone.utc)
        start, end = period_range("week", wednesday)
        assert start == datetime(2026, 10, 18, tzinfo=timezone.utc)
        assert end == datetime(2026, 10, 25, tzinfo=timezone.utc)

    def test_week_on_sunday_itself(self):
        sunday = datetime(2026, 10, 18, 1, 0, tzinfo=timezone.utc)
        assert period_range("week", sunday)[0] == datetime(2026, 10, 18, tzinfo=timezone.utc)

    def test_today(self):
        now = datetime(2026, 10, 21, 15, 30, tzinfo=timezone.utc)
        assert period_range("today", now) == (
            datetime(2026, 10, 21, tzinfo=timezone.utc), datetime(2026, 10, 22, tzinfo=timezone.utc),
        )

    def test_month_rolls_over_year(self):
        now = datetime(2026, 12, 5, tzinfo=timezone.utc)
        assert period_range("month", now) == (
            datetime(2026, 12, 1, tzinfo=timezone.utc), datetime(2027, 1, 1, tzinfo=timezone.utc),
        )

    def test_year(self):
        now = datetime(2026, 6, 5, tzinfo=timezone.utc)
        assert period_range("year", now)[0] == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_all_is_unbounded(self):
        assert period_range("all") is None


class TestQueryParsing:
    def test_defaults(self):
        q = parse_transaction_query({})
        assert (q.page, q.limit, q.period, q.sort_by, q.sort_order) == (1, 10, "all", "createdAt", "desc")
        assert q.include_items is False

    def test_errors_reported_together(self):
        with pytest.raises(ValidationError) as exc:
            parse_transaction_query({"page": "0", "limit": "51", "sortBy": "password"})
        assert exc.value.message == "Invalid page number, Invalid limit (max 50), Invalid sortBy parameter"

    def test_escape_like(self):
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"

    def test_search_is_sanitized(self):
        q = parse_transaction_query({"search": "<script>x</script>budi"})
        assert q.search == "budi"


@pytest.fixture
def history(customer, make_user, make_order):
    """Five orders for the customer plus one belonging to someone else."""
    now = datetime.now(timezone.utc)
    ids = {
        "pending": make_order(customer, status="pending", total="100000.00", created_at=now - timedelta(minutes=5)),
        "paid": make_order(customer, status="paid", total="250000.00", created_at=now - timedelta(minutes=4)),
        "shipped": make_order(customer, status="shipped", total="50000.00", created_at=now - timedelta(minutes=3),
                              recipient_name="Siti Rahma"),
        "delivered": make_order(customer, status="delivered", total="75000.00", created_at=now - timedelta(minutes=2)),
        "old": make_order(customer, status="delivered", total="25000.00", created_at=now - timedelta(days=800)),
    }
    other = make_user(email="lain@example.com")
    ids["foreign"] = make_order(other, total="999000.00", recipient_email="lain@example.com")
    return ids


class TestListTransactions:
    def test_only_own_orders(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions").json()["data"]
        ids = [t["id"] for t in data["transactions"]]
        assert history["foreign"] not in ids
        assert data["pagination"]["totalCount"] == 5

    def test_newest_first_by_default(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions").json()["data"]
        assert [t["id"] for t in data["transactions"]][:2] == [history["delivered"], history["shipped"]]

    def test_pagination(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions", params={"limit": 2, "page": 3}).json()["data"]
        assert len(data["transactions"]) == 1
        assert data["pagination"] == {
            "currentPage": 3, "totalPages": 3, "totalCount": 5, "limit": 2,
            "hasNextPage": False, "hasPrevPage": True,
        }

    def test_status_filter(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions", params={"status": "delivered"}).json()["data"]
        assert {t["id"] for t in data["transactions"]} == {history["delivered"], history["old"]}

    def test_period_filter(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions", params={"period": "year"}).json()["data"]
        assert history["old"] not in [t["id"] for t in data["transactions"]]
        assert data["summary"]["totalOrders"] == 4

    def test_search(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions", params={"search": "siti"}).json()["data"]
        assert [t["id"] for t in data["transactions"]] == [history["shipped"]]
        assert data["filters"]["search"] == "siti"

    def test_search_wildcards_are_literal(self, client, customer, login, history, make_order):
        underscored = make_order(customer, recipient_name="Rina_Wati")
        login(customer)
        data = client.get("/api/transactions", params={"search": "%"}).json()["data"]
        assert data["transactions"] == []
        assert data["summary"]["totalOrders"] == 0
        data = client.get("/api/transactions", params={"search": "_"}).json()["data"]
        assert [t["id"] for t in data["transactions"]] == [underscored]

    def test_sort_by_total(self, client, customer, login, history):
        login(customer)
        data = client.get("/api/transactions", params={"sortBy": "total", "sortOrder": "asc"}).json()["data"]
        assert [t["total"] for t in data["transactions"]] == [
            "25000.00", "50000.00", "75000.00", "100000.00", "250000.00",
        ]

    def test_summary(self, client, customer, login, history):
        login(customer)
        summary = client.get("/api/transactions").json()["data"]["summary"]
        assert summary["totalOrders"] == 5
        assert summary["totalAmount"] == "500000.00"
        assert summary["avgOrderValue"] == "100000.00"
        assert summary["deliveredOrders"] == 2
        assert summary["pendingOrders"] == 1
        assert summary["cancelledOrders"] == 0

    def test_empty_history(self, client, customer, login):
        login(customer)
        data = client.get("/api/transactions").json()["data"]
        assert data["transactions"] == []
        assert data["summary"]["avgOrderValue"] == "0.00"
        assert data["pagination"]["totalPages"] == 0

    def test_include_items(self, client, customer, login, make_order, products):
        make_order(customer, items=[(products["kopi-arabika"], 2)])
        login(customer)
        without = client.get("/api/transactions").json()["data"]["transactions"][0]
        with_items = client.get("/api/transactions", params={"includeItems": "true"}).json()["data"]["transactions"][0]
        assert "items" not in without
        assert with_items["items"][0]["quantity"] == 2

    def test_invalid_sort(self, client, customer, login):
        login(customer)
        resp = client.get("/api/transactions", params={"sortBy": "secret_column"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid sortBy parameter"

    def test_requires_login(self, client, database):
        assert client.get("/api/transactions").status_code == 401


class TestCancel:
    def test_cancel_restores_stock(self, client, customer, login, make_order, products, run_db):
        order_id = make_order(customer, items=[(products["kopi-arabika"], 2), (products["teh-melati"], 1)])
        headers = login(customer)
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "cancel"}, headers=headers)
        assert resp.json() == {"success": True, "message": "Pesanan berhasil dibatalkan"}

        order = run_db(lambda db: fetch_order(db, order_id))
        assert order.status == "cancelled"
        assert order.meta["cancelled"]["previous_status"] == "pending"
        assert order.meta["cancelled"]["cancelled_by"] == customer
        assert order.meta["status_history"][-1]["source"] == f"user:{customer}"
        assert run_db(lambda db: fetch_stock(db, products["kopi-arabika"])) == 22
        assert run_db(lambda db: fetch_stock(db, products["teh-melati"])) == 6

    def test_cancel_processing_order(self, client, customer, login, make_order):
        order_id = make_order(customer, status="processing")
        headers = login(customer)
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "cancel"}, headers=headers)
        assert resp.status_code == 200

    @pytest.mark.parametrize("status, message", [
        ("shipped", "Pesanan yang sudah dikirim tidak dapat dibatalkan"),
        ("delivered", "Pesanan yang sudah diterima tidak dapat dibatalkan"),
        ("cancelled", "Pesanan sudah dibatalkan sebelumnya"),
        ("paid", "Pesanan yang sudah dibayar sedang diproses, hubungi customer service untuk pembatalan"),
    ])
    def test_not_cancellable(self, client, customer, login, make_order, products, run_db, status, message):
        order_id = make_order(customer, status=status, items=[(products["kopi-arabika"], 2)])
        headers = login(customer)
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "cancel"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["message"] == message
        assert run_db(lambda db: fetch_stock(db, products["kopi-arabika"])) == 20

    def test_other_users_order(self, client, customer, make_user, login, make_order):
        order_id = make_order(customer)
        headers = login(make_user(email="lain@example.com"))
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "cancel"}, headers=headers)
        assert resp.status_code == 404

    def test_requires_csrf(self, client, customer, login, make_order, run_db):
        order_id = make_order(customer)
        login(customer)
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "cancel"})
        assert resp.status_code == 403
        assert run_db(lambda db: fetch_order(db, order_id)).status == "pending"

    def test_lost_race_is_conflict(self, customer, make_order, products, run_db):
        order_id = make_order(customer, items=[(products["kopi-arabika"], 2)])

        async def scenario():
            async with SessionLocal() as stale, SessionLocal() as other:
                await transaction_service.get_user_order(stale, customer, order_id)
                shipped = await other.get(Order, order_id)
                shipped.status = "shipped"
                await other.commit()
                with pytest.raises(ConflictError):
                    await transaction_service.cancel_order(stale, customer, order_id)

        run(scenario())
        assert run_db(lambda db: fetch_order(db, order_id)).status == "shipped"
        assert run_db(lambda db: fetch_stock(db, products["kopi-arabika"])) == 20


class TestActions:
    def test_reorder(self, client, customer, login, make_order, products):
        order_id = make_order(customer, status="delivered", items=[(products["kopi-arabika"], 2), (products["teh-melati"], 1)])
        headers = login(customer)
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "reorder"}, headers=headers)
        assert resp.json() == {
            "success": True,
            "message": "Redirecting to checkout",
            "data": {"action": "reorder", "items": [
                {"productId": products["kopi-arabika"], "quantity": 2},
                {"productId": products["teh-melati"], "quantity": 1},
            ]},
        }

    def test_missing_fields(self, client, customer, login):
        headers = login(customer)
        resp = client.post("/api/transactions", json={"action": "cancel"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["message"] == "Order ID and action are required"

    def test_unknown_action(self, client, customer, login, make_order):
        order_id = make_order(customer)
        headers = login(customer)
        resp = client.post("/api/transactions", json={"orderId": order_id, "action": "refund"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid action"
