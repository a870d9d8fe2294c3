"""Checkout orchestration.

Placement and cancellation touch three documents (cart, order, products)
without a multi-document transaction, so both are written as sagas: every
forward step that can fail after a write has a compensating step, and the
order of steps is part of the contract.

Placement:  validate lines -> price -> insert pending order -> reserve stock
            (compensate: release + drop order) -> clear cart.
Cancel:     release stock -> conditional status update
            (compensate: re-reserve if another request won the update).
"""
import logging
from typing import Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from storefront.cart import CartRepository
from storefront.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    StockError,
    ValidationError,
    require_owner_or_admin,
)
from storefront.inventory import InventoryGuard
from storefront.models import Principal
from storefront.orders import PAYMENT_METHODS, Order, OrderItem, OrderRepository, ShippingAddress
from storefront.pricing import PricingEngine, to_money

logger = logging.getLogger(__name__)

PRICE_POLICIES = ("live", "snapshot")


class CheckoutOrchestrator:
    def __init__(
        self,
        db,
        pricing: PricingEngine,
        price_policy: str = "live",
        delivery_days: int = 7,
        max_cart_items: int = 50,
    ):
        if price_policy not in PRICE_POLICIES:
            raise ValueError(f"Unknown price policy '{price_policy}'")
        self.pricing = pricing
        self.price_policy = price_policy
        self.delivery_days = delivery_days
        self.inventory = InventoryGuard(db)
        self.carts = CartRepository(db, max_items=max_cart_items)
        self.orders = OrderRepository(db)

    # --- Placement ---

    async def place_order(
        self,
        principal: Principal,
        payment_method: str,
        shipping_address,
        notes: Optional[str] = None,
    ) -> Order:
        if not payment_method:
            raise ValidationError("Payment method is required")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError("Please select a valid payment method", allowed=list(PAYMENT_METHODS))
        address = self._shipping_address(shipping_address)

        cart = await self.carts.get(principal.id)
        if cart is None or cart.is_empty:
            raise ValidationError("Cart is empty. Cannot place order.")

        items = await self._snapshot_items(cart.items)
        totals = self.pricing.compute((item.price, item.quantity) for item in items)

        order = Order.create(
            user_id=principal.id,
            items=items,
            totals=totals,
            payment_method=payment_method,
            shipping_address=address,
            notes=notes,
            delivery_days=self.delivery_days,
        )
        order = await self.orders.insert(order)

        reserved: List[OrderItem] = []
        try:
            for item in order.items:
                await self.inventory.reserve(item.product_id, item.quantity)
                reserved.append(item)
        except Exception:
            logger.warning(
                "Reservation failed during checkout, rolling back",
                extra={"order_number": order.order_number, "user_id": principal.id},
            )
            await self._rollback_placement(order, reserved)
            raise

        await self.carts.clear(principal.id)
        logger.info(
            "Order placed",
            extra={"order_number": order.order_number, "user_id": principal.id},
        )
        return order

    def _shipping_address(self, shipping_address) -> ShippingAddress:
        if not shipping_address:
            raise ValidationError("Shipping address is required")
        if isinstance(shipping_address, ShippingAddress):
            return shipping_address
        try:
            return ShippingAddress.model_validate(shipping_address)
        except PydanticValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ValidationError(
                "Shipping address is incomplete: " + ", ".join(fields), fields=fields
            ) from e

    async def _snapshot_items(self, lines) -> List[OrderItem]:
        """Re-check every cart line against the live catalog and copy it into an OrderItem."""
        items = []
        for line in lines:
            try:
                availability = await self.inventory.check_availability(line.product_id, line.quantity)
            except NotFoundError:
                raise NotFoundError(
                    f'Product "{line.name or "Unknown"}" is no longer available',
                    product_id=line.product_id,
                )

            product = availability.product
            if not availability.available:
                raise StockError(
                    f'Insufficient stock for "{product.name}". Only {product.stock} available.',
                    product_id=line.product_id,
                    available=product.stock,
                    requested=line.quantity,
                )

            price = product.price if self.price_policy == "live" else line.price
            items.append(OrderItem(
                product_id=line.product_id,
                name=product.name,
                price=to_money(price),
                quantity=line.quantity,
                subtotal=self.pricing.line_subtotal(price, line.quantity),
            ))
        return items

    async def _rollback_placement(self, order: Order, reserved: Iterable[OrderItem]) -> None:
        """Undo a failed placement. Never raises; the caller re-raises the reservation error."""
        restored = await self._release_all(order, reserved)
        if restored:
            try:
                await self.orders.delete(order.id)
                logger.info("Checkout rolled back", extra={"order_number": order.order_number})
                return
            except Exception:
                logger.error(
                    "Failed to delete rolled back order, cancelling it instead",
                    extra={"order_number": order.order_number},
                    exc_info=True,
                )

        # Keep the record so it can be reconciled.
        changes = order.transition_to("cancelled", reason="Inventory reservation failed")
        try:
            await self.orders.apply_changes(order, "pending", changes)
        except Exception:
            logger.critical(
                "Failed to cancel rolled back order",
                extra={"order_number": order.order_number},
                exc_info=True,
            )
            return
        if not restored:
            logger.critical(
                "Checkout rollback incomplete, manual stock correction required",
                extra={"order_number": order.order_number},
            )

    async def _release_all(self, order: Order, items: Iterable[OrderItem]) -> bool:
        ok = True
        for item in reversed(list(items)):
            try:
                await self.inventory.release(item.product_id, item.quantity)
            except Exception:
                ok = False
                logger.critical(
                    "Failed to release stock",
                    extra={"order_number": order.order_number, "product_id": item.product_id},
                    exc_info=True,
                )
        return ok

    async def _reserve_all(self, order: Order, items: Iterable[OrderItem]) -> None:
        for item in items:
            try:
                await self.inventory.reserve(item.product_id, item.quantity)
            except Exception:
                logger.critical(
                    "Failed to re-reserve released stock",
                    extra={"order_number": order.order_number, "product_id": item.product_id},
                    exc_info=True,
                )

    # --- Lifecycle ---

    async def get_order(self, principal: Principal, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        require_owner_or_admin(principal, order.user_id, "view")
        return order

    async def cancel_order(self, principal: Principal, order_id: str, reason: Optional[str] = None) -> Order:
        order = await self.orders.get(order_id)
        require_owner_or_admin(principal, order.user_id, "cancel")
        if not order.can_be_cancelled:
            raise InvalidTransitionError(
                order.order_status, "cancelled", "Order cannot be cancelled at this stage"
            )

        expected = order.order_status
        changes = order.transition_to("cancelled", reason=reason)

        # Release before the status flips; an interrupted cancel leaves the order cancellable.
        released: List[OrderItem] = []
        try:
            for item in order.items:
                await self.inventory.release(item.product_id, item.quantity)
                released.append(item)
        except Exception:
            await self._reserve_all(order, released)
            raise

        if not await self.orders.apply_changes(order, expected, changes):
            await self._reserve_all(order, order.items)
            current = await self.orders.get(order_id)
            raise InvalidTransitionError(current.order_status, "cancelled")

        logger.info(
            "Order cancelled",
            extra={"order_number": order.order_number, "user_id": principal.id},
        )
        return order

    async def update_status(
        self, principal: Principal, order_id: str, status: str, reason: Optional[str] = None
    ) -> Order:
        if not principal.is_admin:
            raise AuthorizationError("Only admins can update order status")
        if status == "cancelled":
            return await self.cancel_order(principal, order_id, reason)

        order = await self.orders.get(order_id)
        expected = order.order_status
        changes = order.transition_to(status, reason=reason)
        if not await self.orders.apply_changes(order, expected, changes):
            current = await self.orders.get(order_id)
            raise InvalidTransitionError(current.order_status, status)

        logger.info(
            f"Order status changed {expected} -> {status}",
            extra={"order_number": order.order_number, "user_id": principal.id},
        )
        return order

    async def mark_paid(self, principal: Principal, order_id: str) -> Order:
        if not principal.is_admin:
            raise AuthorizationError("Only admins can record payments")
        order = await self.orders.get(order_id)
        expected = order.order_status
        changes = order.mark_as_paid()
        if not await self.orders.apply_changes(order, expected, changes):
            raise ConflictError("Order changed concurrently. Please retry.")
        return order
