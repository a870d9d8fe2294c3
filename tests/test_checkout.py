"""Tests for order placement and lifecycle orchestration."""

import asyncio
from decimal import Decimal

import pytest
from bson import Decimal128, ObjectId

from storefront.cart import CartService
from storefront.checkout import CheckoutOrchestrator
from storefront.errors import (
    AuthorizationError, InvalidTransitionError, NotFoundError, StockError, ValidationError,
)


@pytest.fixture
def checkout(db, pricing):
    return CheckoutOrchestrator(db, pricing)


@pytest.fixture
def fill_cart(db):
    async def _fill(user, *lines):
        service = CartService(db)
        for product_id, qty in lines:
            await service.add_item(user.id, product_id, qty)

    return _fill


class TestPlaceOrder:
    @pytest.mark.asyncio
    async def test_places_order_and_reserves_stock(
        self, db, checkout, buyer, make_product, fill_cart, stock_of, shipping_address
    ):
        pid = await make_product(price="12.50", stock=10)
        await fill_cart(buyer, (pid, 2))

        order = await checkout.place_order(buyer, "Card", shipping_address)

        assert order.id is not None
        assert order.order_status == "pending"
        assert order.subtotal == Decimal("25.00")
        assert order.tax == Decimal("2.00")
        assert order.shipping == Decimal("10.00")
        assert order.total == Decimal("37.00")
        assert order.total_items == 2
        assert await stock_of(pid) == 8

        cart = await checkout.carts.get(buyer.id)
        assert cart.is_empty
        assert await db.orders.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_two_line_order_totals(self, checkout, buyer, make_product, fill_cart, stock_of, shipping_address):
        first = await make_product(name="A", price="10.00", stock=5)
        second = await make_product(name="B", price="5.00", stock=5)
        await fill_cart(buyer, (first, 2), (second, 1))

        order = await checkout.place_order(buyer, "Card", shipping_address)

        assert [(i.product_id, i.quantity, i.subtotal) for i in order.items] == [
            (first, 2, Decimal("20.00")),
            (second, 1, Decimal("5.00")),
        ]
        assert order.subtotal == Decimal("25.00")
        assert order.tax == Decimal("2.00")
        assert order.shipping == Decimal("10.00")
        assert order.total == Decimal("37.00")
        assert await stock_of(first) == 3
        assert await stock_of(second) == 4

    @pytest.mark.asyncio
    async def test_insufficient_stock_writes_nothing(
        self, db, checkout, buyer, make_product, fill_cart, stock_of, shipping_address
    ):
        pid = await make_product(name="Lamp", stock=5)
        await fill_cart(buyer, (pid, 5))
        await db.products.update_one({"_id": ObjectId(pid)}, {"$set": {"stock": 3}})

        with pytest.raises(StockError) as exc_info:
            await checkout.place_order(buyer, "Card", shipping_address)

        assert exc_info.value.available == 3
        assert "Lamp" in exc_info.value.message
        assert await db.orders.count_documents({}) == 0
        assert await stock_of(pid) == 3
        cart = await checkout.carts.get(buyer.id)
        assert cart.get_item(pid).quantity == 5

    @pytest.mark.asyncio
    async def test_empty_cart(self, checkout, buyer, shipping_address):
        with pytest.raises(ValidationError):
            await checkout.place_order(buyer, "Card", shipping_address)

    @pytest.mark.asyncio
    async def test_invalid_payment_method(self, checkout, buyer, make_product, fill_cart, shipping_address):
        pid = await make_product()
        await fill_cart(buyer, (pid, 1))
        with pytest.raises(ValidationError):
            await checkout.place_order(buyer, "IOU", shipping_address)

    @pytest.mark.asyncio
    async def test_incomplete_shipping_address(self, checkout, buyer, make_product, fill_cart):
        pid = await make_product()
        await fill_cart(buyer, (pid, 1))
        with pytest.raises(ValidationError) as exc_info:
            await checkout.place_order(buyer, "Card", {"full_name": "Jane"})
        assert "city" in exc_info.value.details["fields"]

    @pytest.mark.asyncio
    async def test_deactivated_product(
        self, db, checkout, buyer, make_product, fill_cart, shipping_address
    ):
        pid = await make_product(name="Retired")
        await fill_cart(buyer, (pid, 1))
        await db.products.update_one({"_id": ObjectId(pid)}, {"$set": {"is_active": False}})
        with pytest.raises(NotFoundError) as exc_info:
            await checkout.place_order(buyer, "Card", shipping_address)
        assert "Retired" in exc_info.value.message
        assert await db.orders.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_free_shipping_above_threshold(
        self, checkout, buyer, make_product, fill_cart, shipping_address
    ):
        pid = await make_product(price="30.00")
        await fill_cart(buyer, (pid, 2))
        order = await checkout.place_order(buyer, "PayPal", shipping_address)
        assert order.shipping == Decimal("0.00")
        assert order.total == Decimal("64.80")

    @pytest.mark.asyncio
    async def test_live_price_policy(
        self, db, checkout, buyer, make_product, fill_cart, shipping_address
    ):
        pid = await make_product(price="12.50")
        await fill_cart(buyer, (pid, 1))
        await db.products.update_one({"_id": ObjectId(pid)}, {"$set": {"price": Decimal128("20.00")}})
        order = await checkout.place_order(buyer, "Card", shipping_address)
        assert order.items[0].price == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_snapshot_price_policy(
        self, db, pricing, buyer, make_product, fill_cart, shipping_address
    ):
        checkout = CheckoutOrchestrator(db, pricing, price_policy="snapshot")
        pid = await make_product(price="12.50")
        await fill_cart(buyer, (pid, 1))
        await db.products.update_one({"_id": ObjectId(pid)}, {"$set": {"price": Decimal128("20.00")}})
        order = await checkout.place_order(buyer, "Card", shipping_address)
        assert order.items[0].price == Decimal("12.50")

    def test_unknown_price_policy(self, db, pricing):
        with pytest.raises(ValueError):
            CheckoutOrchestrator(db, pricing, price_policy="auction")

    @pytest.mark.asyncio
    async def test_reservation_failure_rolls_back(
        self, db, checkout, buyer, make_product, fill_cart, stock_of, shipping_address, monkeypatch
    ):
        first = await make_product(name="First", stock=10)
        second = await make_product(name="Second", stock=10)
        await fill_cart(buyer, (first, 2), (second, 3))

        reserve = checkout.inventory.reserve

        async def flaky_reserve(product_id, qty):
            if product_id == second:
                raise StockError("Sold out", product_id=product_id, available=0, requested=qty)
            return await reserve(product_id, qty)

        monkeypatch.setattr(checkout.inventory, "reserve", flaky_reserve)

        with pytest.raises(StockError):
            await checkout.place_order(buyer, "Card", shipping_address)

        assert await stock_of(first) == 10
        assert await stock_of(second) == 10
        assert await db.orders.count_documents({}) == 0
        cart = await checkout.carts.get(buyer.id)
        assert cart.total_items == 5

    @pytest.mark.asyncio
    async def test_failed_compensation_keeps_cancelled_order(
        self, db, checkout, buyer, make_product, fill_cart, shipping_address, monkeypatch
    ):
        first = await make_product(name="First", stock=10)
        second = await make_product(name="Second", stock=10)
        await fill_cart(buyer, (first, 1), (second, 1))

        reserve = checkout.inventory.reserve

        async def flaky_reserve(product_id, qty):
            if product_id == second:
                raise StockError("Sold out", product_id=product_id, available=0, requested=qty)
            return await reserve(product_id, qty)

        async def broken_release(product_id, qty):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(checkout.inventory, "reserve", flaky_reserve)
        monkeypatch.setattr(checkout.inventory, "release", broken_release)

        with pytest.raises(StockError):
            await checkout.place_order(buyer, "Card", shipping_address)

        doc = await db.orders.find_one({})
        assert doc["order_status"] == "cancelled"
        assert doc["cancellation_reason"] == "Inventory reservation failed"

    @pytest.mark.asyncio
    async def test_rollback_keeps_reservation_error_when_delete_fails(
        self, db, checkout, buyer, make_product, fill_cart, stock_of, shipping_address, monkeypatch
    ):
        first = await make_product(name="First", stock=10)
        second = await make_product(name="Second", stock=10)
        await fill_cart(buyer, (first, 1), (second, 1))

        reserve = checkout.inventory.reserve

        async def flaky_reserve(product_id, qty):
            if product_id == second:
                raise StockError("Sold out", product_id=product_id, available=0, requested=qty)
            return await reserve(product_id, qty)

        async def broken_delete(order_id):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(checkout.inventory, "reserve", flaky_reserve)
        monkeypatch.setattr(checkout.orders, "delete", broken_delete)

        with pytest.raises(StockError):
            await checkout.place_order(buyer, "Card", shipping_address)

        assert await stock_of(first) == 10
        doc = await db.orders.find_one({})
        assert doc["order_status"] == "cancelled"
        assert doc["cancellation_reason"] == "Inventory reservation failed"


class TestLifecycle:
    @pytest.fixture
    def placed(self, checkout, buyer, make_product, fill_cart, shipping_address):
        async def _place(stock=10, qty=2):
            pid = await make_product(stock=stock)
            await fill_cart(buyer, (pid, qty))
            order = await checkout.place_order(buyer, "Card", shipping_address)
            return order, pid

        return _place

    @pytest.mark.asyncio
    async def test_cancel_restores_stock(self, checkout, buyer, placed, stock_of):
        order, pid = await placed(stock=10, qty=2)
        assert await stock_of(pid) == 8

        cancelled = await checkout.cancel_order(buyer, order.id, "No longer needed")

        assert cancelled.order_status == "cancelled"
        assert cancelled.cancellation_reason == "No longer needed"
        assert await stock_of(pid) == 10
        stored = await checkout.orders.get(order.id)
        assert stored.order_status == "cancelled"
        assert stored.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancel_twice(self, checkout, buyer, placed, stock_of):
        order, pid = await placed()
        await checkout.cancel_order(buyer, order.id)
        with pytest.raises(InvalidTransitionError):
            await checkout.cancel_order(buyer, order.id)
        assert await stock_of(pid) == 10

    @pytest.mark.asyncio
    async def test_concurrent_cancels_release_once(self, checkout, buyer, placed, stock_of):
        order, pid = await placed(stock=10, qty=2)
        results = await asyncio.gather(
            checkout.cancel_order(buyer, order.id),
            checkout.cancel_order(buyer, order.id),
            return_exceptions=True,
        )
        assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
        assert await stock_of(pid) == 10

    @pytest.mark.asyncio
    async def test_cannot_cancel_shipped(self, checkout, buyer, admin, placed, stock_of):
        order, pid = await placed(stock=10, qty=2)
        for status in ("confirmed", "processing", "shipped"):
            await checkout.update_status(admin, order.id, status)

        with pytest.raises(InvalidTransitionError):
            await checkout.cancel_order(buyer, order.id)
        assert await stock_of(pid) == 8
        assert (await checkout.orders.get(order.id)).order_status == "shipped"

    @pytest.mark.asyncio
    async def test_delivery_completes_payment(self, checkout, admin, placed):
        order, _ = await placed()
        for status in ("confirmed", "processing", "shipped", "delivered"):
            await checkout.update_status(admin, order.id, status)
        stored = await checkout.orders.get(order.id)
        assert stored.order_status == "delivered"
        assert stored.payment_status == "completed"
        assert stored.delivered_at is not None
        assert stored.is_completed

    @pytest.mark.asyncio
    async def test_skipping_states_rejected(self, checkout, admin, placed):
        order, _ = await placed()
        with pytest.raises(InvalidTransitionError):
            await checkout.update_status(admin, order.id, "shipped")
        assert (await checkout.orders.get(order.id)).order_status == "pending"

    @pytest.mark.asyncio
    async def test_admin_cancel_via_status_update(self, checkout, admin, placed, stock_of):
        order, pid = await placed(stock=10, qty=2)
        await checkout.update_status(admin, order.id, "confirmed")
        cancelled = await checkout.update_status(admin, order.id, "cancelled", "Fraud check")
        assert cancelled.order_status == "cancelled"
        assert await stock_of(pid) == 10

    @pytest.mark.asyncio
    async def test_status_update_requires_admin(self, checkout, buyer, placed):
        order, _ = await placed()
        with pytest.raises(AuthorizationError):
            await checkout.update_status(buyer, order.id, "confirmed")

    @pytest.mark.asyncio
    async def test_mark_paid(self, checkout, admin, buyer, placed):
        order, _ = await placed()
        with pytest.raises(AuthorizationError):
            await checkout.mark_paid(buyer, order.id)
        paid = await checkout.mark_paid(admin, order.id)
        assert paid.payment_status == "completed"
        assert (await checkout.orders.get(order.id)).payment_status == "completed"

    @pytest.mark.asyncio
    async def test_ownership(self, checkout, buyer, other_buyer, admin, placed):
        order, _ = await placed()
        assert (await checkout.get_order(buyer, order.id)).id == order.id
        assert (await checkout.get_order(admin, order.id)).id == order.id
        with pytest.raises(AuthorizationError):
            await checkout.get_order(other_buyer, order.id)
        with pytest.raises(AuthorizationError):
            await checkout.cancel_order(other_buyer, order.id)

    @pytest.mark.asyncio
    async def test_unknown_order(self, checkout, buyer):
        with pytest.raises(NotFoundError):
            await checkout.get_order(buyer, str(ObjectId()))
