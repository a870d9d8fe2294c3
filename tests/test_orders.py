"""Tests for the order aggregate and repository."""

import re
from datetime import datetime
from decimal import Decimal

import pytest

from storefront.errors import InvalidTransitionError, NotFoundError, ValidationError
from storefront.orders import Order, OrderItem, OrderRepository, generate_order_number
from storefront.pricing import Totals

ADDRESS = {
    "full_name": "Jane Buyer",
    "address_line1": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
}


def make_order(user_id="u1", status="pending", payment_method="Card", now=None):
    items = [OrderItem(product_id="p1", name="Widget", price=Decimal("12.50"), quantity=2, subtotal=Decimal("25.00"))]
    totals = Totals(
        subtotal=Decimal("25.00"), tax=Decimal("2.00"), shipping=Decimal("10.00"),
        total=Decimal("37.00"), total_items=2,
    )
    order = Order.create(
        user_id=user_id, items=items, totals=totals, payment_method=payment_method,
        shipping_address=ADDRESS, now=now,
    )
    order.order_status = status
    return order


class TestOrderNumber:
    def test_format(self):
        number = generate_order_number(datetime(2024, 3, 9, 12, 0))
        assert re.fullmatch(r"ORD-20240309-[0-9A-F]{8}", number)

    def test_unique_enough(self):
        now = datetime(2024, 3, 9)
        assert len({generate_order_number(now) for _ in range(200)}) == 200


class TestOrderCreate:
    def test_create_sets_defaults(self):
        now = datetime(2024, 1, 1)
        order = make_order(now=now)
        assert order.order_status == "pending"
        assert order.payment_status == "pending"
        assert order.estimated_delivery == datetime(2024, 1, 8)
        assert order.shipping_address.country == "United States"
        assert order.can_be_cancelled
        assert not order.is_completed
        assert order.formatted_total == "$37.00"

    def test_empty_items_rejected(self):
        totals = Totals(Decimal("0"), Decimal("0"), Decimal("10"), Decimal("10"), 0)
        with pytest.raises(ValidationError):
            Order.create(user_id="u1", items=[], totals=totals, payment_method="Card", shipping_address=ADDRESS)

    def test_total_mismatch_rejected(self):
        items = [OrderItem(product_id="p1", name="Widget", price=Decimal("1.00"), quantity=1, subtotal=Decimal("1.00"))]
        totals = Totals(Decimal("1.00"), Decimal("0.08"), Decimal("10.00"), Decimal("99.00"), 1)
        with pytest.raises(ValidationError):
            Order.create(user_id="u1", items=items, totals=totals, payment_method="Card", shipping_address=ADDRESS)

    def test_unknown_payment_method_rejected(self):
        with pytest.raises(ValidationError):
            make_order(payment_method="Barter")

    def test_incomplete_address_rejected(self):
        items = [OrderItem(product_id="p1", name="Widget", price=Decimal("1.00"), quantity=1, subtotal=Decimal("1.00"))]
        totals = Totals(Decimal("1.00"), Decimal("0.08"), Decimal("10.00"), Decimal("11.08"), 1)
        with pytest.raises(ValidationError):
            Order.create(
                user_id="u1", items=items, totals=totals, payment_method="Card",
                shipping_address={**ADDRESS, "city": "   "},
            )

    def test_item_subtotal_must_match(self):
        with pytest.raises(ValueError):
            OrderItem(product_id="p1", name="Widget", price=Decimal("2.00"), quantity=3, subtotal=Decimal("5.00"))


class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        ("pending", "confirmed"),
        ("pending", "cancelled"),
        ("confirmed", "processing"),
        ("confirmed", "cancelled"),
        ("processing", "shipped"),
        ("shipped", "delivered"),
    ])
    def test_allowed(self, current, target):
        order = make_order(status=current)
        changes = order.transition_to(target)
        assert order.order_status == target
        assert changes["order_status"] == target

    @pytest.mark.parametrize("current,target", [
        ("pending", "shipped"),
        ("pending", "delivered"),
        ("confirmed", "pending"),
        ("processing", "cancelled"),
        ("shipped", "cancelled"),
        ("shipped", "processing"),
        ("delivered", "cancelled"),
        ("cancelled", "pending"),
        ("cancelled", "confirmed"),
    ])
    def test_rejected(self, current, target):
        order = make_order(status=current)
        with pytest.raises(InvalidTransitionError) as exc_info:
            order.transition_to(target)
        assert exc_info.value.current == current
        assert exc_info.value.target == target
        assert order.order_status == current

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            make_order().transition_to("lost")

    def test_delivered_completes_payment(self):
        order = make_order(status="shipped")
        now = datetime(2024, 2, 1)
        changes = order.transition_to("delivered", now=now)
        assert order.payment_status == "completed"
        assert order.delivered_at == now
        assert changes["payment_status"] == "completed"
        assert order.is_completed

    def test_cancel_records_reason(self):
        order = make_order()
        order.transition_to("cancelled", reason="Changed my mind")
        assert order.cancelled_at is not None
        assert order.cancellation_reason == "Changed my mind"
        assert not order.can_be_cancelled

    def test_cancellable_statuses(self):
        assert make_order(status="pending").can_be_cancelled
        assert make_order(status="confirmed").can_be_cancelled
        assert not make_order(status="processing").can_be_cancelled

    def test_mark_as_paid(self):
        order = make_order()
        changes = order.mark_as_paid()
        assert order.payment_status == "completed"
        assert changes["payment_status"] == "completed"

    def test_cannot_pay_cancelled_order(self):
        order = make_order(status="cancelled")
        with pytest.raises(InvalidTransitionError):
            order.mark_as_paid()


class TestOrderRepository:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, db):
        repo = OrderRepository(db)
        order = await repo.insert(make_order())
        loaded = await repo.get(order.id)
        assert loaded.order_number == order.order_number
        assert loaded.total == Decimal("37.00")
        assert loaded.items[0].subtotal == Decimal("25.00")
        by_number = await repo.get_by_number(order.order_number)
        assert by_number.id == order.id

    @pytest.mark.asyncio
    async def test_get_missing(self, db):
        repo = OrderRepository(db)
        with pytest.raises(NotFoundError):
            await repo.get("65f000000000000000000000")
        with pytest.raises(NotFoundError):
            await repo.get("bogus")

    @pytest.mark.asyncio
    async def test_apply_changes_is_conditional(self, db):
        repo = OrderRepository(db)
        order = await repo.insert(make_order())
        changes = order.transition_to("confirmed")
        assert await repo.apply_changes(order, "pending", changes) is True
        # Stored status is no longer pending
        assert await repo.apply_changes(order, "pending", {"order_status": "cancelled"}) is False
        assert (await repo.get(order.id)).order_status == "confirmed"

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, db):
        repo = OrderRepository(db)
        for _ in range(3):
            await repo.insert(make_order(user_id="u1"))
        await repo.insert(make_order(user_id="u2", status="confirmed"))

        orders, total = await repo.list(user_id="u1", page=1, limit=2)
        assert total == 3
        assert len(orders) == 2

        orders, total = await repo.list(order_status="confirmed")
        assert total == 1
        assert orders[0].user_id == "u2"

        with pytest.raises(ValidationError):
            await repo.list(sort_by="password")

    @pytest.mark.asyncio
    async def test_stats(self, db):
        repo = OrderRepository(db)
        await repo.insert(make_order())
        paid = make_order(status="confirmed")
        paid.mark_as_paid()
        await repo.insert(paid)

        stats = await repo.stats()
        assert stats["total_orders"] == 2
        assert stats["total_revenue"] == Decimal("37.00")
        assert stats["status_breakdown"]["pending"] == 1
        assert stats["status_breakdown"]["confirmed"] == 1
        assert len(stats["recent_orders"]) == 2
