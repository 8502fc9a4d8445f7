"""Tests for the forward-only order status machine."""

import pytest
from sqlalchemy import update

from common.exceptions import ValidationError
from modules.order.models import Order
from modules.order.service import order_service
from modules.shipping.booking import map_carrier_status


def _transition(run_db, order_id, new_status, source="test", force=False):
    async def _apply(db):
        order = await db.get(Order, order_id)
        changed = await order_service.apply_status(db, order, new_status, source, {"note": "x"}, force=force)
        await db.commit()
        return changed, order.status, order.meta["status_history"]
    return run_db(_apply)


class TestApplyStatus:
    def test_forward_move_is_recorded(self, run_db, customer, make_order):
        order_id = make_order(customer)
        changed, status, history = _transition(run_db, order_id, "paid", source="payment")
        assert changed is True
        assert status == "paid"
        assert history[-1]["from"] == "pending"
        assert history[-1]["to"] == "paid"
        assert history[-1]["source"] == "payment"
        assert history[-1]["evidence"] == {"note": "x"}

    def test_skipping_ahead_is_allowed(self, run_db, customer, make_order):
        order_id = make_order(customer, status="processing")
        assert _transition(run_db, order_id, "delivered")[1] == "delivered"

    def test_same_status_is_noop(self, run_db, customer, make_order):
        order_id = make_order(customer, status="paid")
        changed, status, history = _transition(run_db, order_id, "paid")
        assert changed is False
        assert history == []

    def test_backwards_is_ignored(self, run_db, customer, make_order):
        order_id = make_order(customer, status="shipped")
        changed, status, _ = _transition(run_db, order_id, "pickup_scheduled")
        assert changed is False
        assert status == "shipped"

    @pytest.mark.parametrize("terminal", ["cancelled", "failed", "delivered"])
    def test_terminal_statuses_stick(self, run_db, customer, make_order, terminal):
        order_id = make_order(customer, status=terminal)
        assert _transition(run_db, order_id, "processing")[0] is False

    def test_cancel_from_any_open_status(self, run_db, customer, make_order):
        order_id = make_order(customer, status="out_for_delivery")
        assert _transition(run_db, order_id, "cancelled")[1] == "cancelled"

    def test_force_overrides(self, run_db, customer, make_order):
        order_id = make_order(customer, status="delivered")
        changed, status, history = _transition(run_db, order_id, "shipped", force=True)
        assert changed is True
        assert status == "shipped"
        assert history[-1]["forced"] is True

    def test_unknown_status(self, run_db, customer, make_order):
        order_id = make_order(customer)
        with pytest.raises(ValidationError):
            _transition(run_db, order_id, "lost")

    def test_concurrent_change_wins(self, run_db, customer, make_order):
        order_id = make_order(customer)

        async def _race(db):
            order = await db.get(Order, order_id)
            await db.execute(
                update(Order).where(Order.id == order_id).values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            assert order.status == "pending"
            changed = await order_service.apply_status(db, order, "paid", "payment")
            await db.commit()
            return changed

        assert run_db(_race) is False
        assert run_db(lambda db: db.get(Order, order_id)).status == "cancelled"


class TestCarrierStatusMap:
    @pytest.mark.parametrize("carrier, expected", [
        ("confirmed", "processing"),
        ("allocated", "pickup_scheduled"),
        ("picking_up", "pickup_scheduled"),
        ("picked", "shipped"),
        ("dropping_off", "out_for_delivery"),
        ("delivered", "delivered"),
        ("cancelled", "cancelled"),
        ("rejected", "failed"),
        ("DELIVERED", "delivered"),
        ("on_hold", None),
        (None, None),
    ])
    def test_mapping(self, carrier, expected):
        assert map_carrier_status(carrier) == expected
