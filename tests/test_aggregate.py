"""Tests for the order aggregate and the authorization check."""

from types import SimpleNamespace

import pytest

from app.aggregate import OrderAggregate, OrderItem, OrderStatus
from app.authz import ensure_owner, is_owner
from app.errors import InvalidStateError, UnauthorizedError


def make_order(status, items=()):
    return OrderAggregate(
        id="O1",
        user_id="U1",
        status=status,
        items=[
            OrderItem(id=f"I{i}", product_id=pid, quantity=qty, price=10.0)
            for i, (pid, qty) in enumerate(items)
        ],
    )


class TestOrderStatus:
    def test_parse_valid(self):
        assert OrderStatus.parse("SHIPPED") is OrderStatus.SHIPPED

    @pytest.mark.parametrize("value", [None, "", "shipped", "REFUNDED"])
    def test_parse_invalid_returns_none(self, value):
        assert OrderStatus.parse(value) is None


class TestCancellation:
    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.PROCESSING])
    def test_cancellable_statuses(self, status):
        order = make_order(status)
        assert order.can_cancel()
        order.ensure_cancellable()

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    )
    def test_other_statuses_reject(self, status):
        order = make_order(status)
        assert not order.can_cancel()
        with pytest.raises(InvalidStateError) as exc_info:
            order.ensure_cancellable()
        assert exc_info.value.status == status.value

    def test_apply_cancelled(self):
        order = make_order(OrderStatus.PROCESSING)
        order.apply_cancelled()
        assert order.status is OrderStatus.CANCELLED

    def test_stock_restorations_sum_same_product(self):
        order = make_order(OrderStatus.PENDING, [("P1", 2), ("P2", 1), ("P1", 3)])
        assert order.stock_restorations() == {"P1": 5, "P2": 1}

    def test_stock_restorations_empty_order(self):
        assert make_order(OrderStatus.PENDING).stock_restorations() == {}


class TestFromRows:
    def test_rebuilds_aggregate(self):
        order_row = SimpleNamespace(
            id="O9", user_id="U1", status="PROCESSING", address_id="A1", created_at=None
        )
        item_rows = [SimpleNamespace(id="I1", product_id="P1", quantity=2, price="19.50")]

        order = OrderAggregate.from_rows(order_row, item_rows)

        assert order.status is OrderStatus.PROCESSING
        assert order.address_id == "A1"
        assert order.items == [OrderItem(id="I1", product_id="P1", quantity=2, price=19.5)]


class TestAuthorization:
    def test_owner_matches(self):
        assert is_owner("U1", "U1")

    def test_other_user_is_not_owner(self):
        assert not is_owner("U1", "U2")

    @pytest.mark.parametrize("caller", [None, ""])
    def test_missing_caller_is_not_owner(self, caller):
        assert not is_owner("U1", caller)

    def test_ensure_owner_does_not_leak_owner(self):
        with pytest.raises(UnauthorizedError) as exc_info:
            ensure_owner("secret-owner", "U2")
        assert "secret-owner" not in str(exc_info.value)
        assert exc_info.value.status_code == 401
