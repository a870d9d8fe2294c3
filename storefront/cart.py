"""Shopping cart aggregate.

A cart belongs to exactly one user and holds at most one line per product.
``total_items`` and ``total_amount`` are never set directly: every mutator
finishes by calling ``recalculate_totals`` and the model recomputes them when
it is loaded, so a cart with stale totals is never observable.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple, TypeVar

from bson import Decimal128
from pydantic import BaseModel, Field, field_validator, model_validator
from pymongo.errors import DuplicateKeyError

from shared.utils import from_bson_decimal, to_bson
from storefront.errors import CapacityError, ConflictError, NotFoundError, StockError, ValidationError
from storefront.inventory import InventoryGuard
from storefront.models import MongoModel, ProductDB, str_to_oid
from storefront.pricing import format_currency, to_money

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 50
SAVE_ATTEMPTS = 5

R = TypeVar("R")


class CartItem(BaseModel):
    product_id: str
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: Decimal  # snapshot taken when the item was last added

    @field_validator("price", mode="before")
    @classmethod
    def decode_price(cls, v):
        return from_bson_decimal(v)

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.price) * self.quantity


class Cart(MongoModel):
    user_id: str
    items: List[CartItem] = []
    total_items: int = 0
    total_amount: Decimal = Decimal("0.00")
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("total_amount", mode="before")
    @classmethod
    def decode_total(cls, v):
        return from_bson_decimal(v)

    @model_validator(mode="after")
    def restore_totals(self):
        self.recalculate_totals()
        return self

    def recalculate_totals(self) -> None:
        self.total_items = sum(item.quantity for item in self.items)
        self.total_amount = sum((item.subtotal for item in self.items), Decimal("0.00"))

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    @property
    def formatted_total(self) -> str:
        return format_currency(self.total_amount)

    def get_item(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == str(product_id):
                return item
        return None

    def add_item(self, product: ProductDB, quantity: int = 1, max_items: int = DEFAULT_MAX_ITEMS) -> CartItem:
        """Add ``quantity`` of ``product``; an existing line grows and takes the current price."""
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")

        item = self.get_item(product.id)
        if item is not None:
            item.quantity += quantity
            item.price = product.price
            item.name = product.name
        else:
            if len(self.items) >= max_items:
                raise CapacityError(f"Cart cannot have more than {max_items} items", max_items=max_items)
            item = CartItem(product_id=product.id, name=product.name, quantity=quantity, price=product.price)
            self.items.append(item)

        self.recalculate_totals()
        return item

    def update_item_quantity(self, product_id: str, quantity: int) -> bool:
        item = self.get_item(product_id)
        if item is None:
            return False
        if quantity <= 0:
            self.items.remove(item)
        else:
            item.quantity = quantity
        self.recalculate_totals()
        return True

    def remove_item(self, product_id: str) -> bool:
        initial = len(self.items)
        self.items = [item for item in self.items if item.product_id != str(product_id)]
        self.recalculate_totals()
        return len(self.items) < initial

    def clear(self) -> None:
        self.items = []
        self.recalculate_totals()


def line_id(product_id: str) -> str:
    """Canonical form of a product id as stored on cart lines."""
    return str(str_to_oid(product_id, "Product"))


class StaleCartError(Exception):
    """The stored cart changed between load and save."""


class CartRepository:
    def __init__(self, db, max_items: int = DEFAULT_MAX_ITEMS):
        self.carts = db.carts
        self.max_items = max_items

    async def get(self, user_id: str) -> Optional[Cart]:
        return Cart.from_mongo(await self.carts.find_one({"user_id": user_id}))

    async def get_or_create(self, user_id: str) -> Cart:
        doc = await self.carts.find_one({"user_id": user_id})
        if doc:
            return Cart.from_mongo(doc)

        fresh = Cart(user_id=user_id).to_mongo()
        fresh.pop("user_id")
        try:
            await self.carts.update_one({"user_id": user_id}, {"$setOnInsert": fresh}, upsert=True)
        except DuplicateKeyError:
            # A concurrent request created it first
            pass
        return Cart.from_mongo(await self.carts.find_one({"user_id": user_id}))

    async def save(self, cart: Cart) -> Cart:
        """Compare-and-swap on ``version``; raises StaleCartError when another write won."""
        cart.recalculate_totals()
        cart.updated_at = datetime.utcnow()
        result = await self.carts.update_one(
            {"_id": str_to_oid(cart.id, "Cart"), "version": cart.version},
            {
                "$set": to_bson({
                    "items": [item.model_dump() for item in cart.items],
                    "total_items": cart.total_items,
                    "total_amount": cart.total_amount,
                    "updated_at": cart.updated_at,
                }),
                "$inc": {"version": 1},
            },
        )
        if result.matched_count == 0:
            raise StaleCartError(cart.id)
        cart.version += 1
        return cart

    async def mutate(self, user_id: str, change: Callable[[Cart], R]) -> Tuple[Cart, R]:
        """Apply ``change`` to the user's cart as one atomic read-modify-write."""
        for attempt in range(SAVE_ATTEMPTS):
            cart = await self.get_or_create(user_id)
            result = change(cart)
            try:
                await self.save(cart)
            except StaleCartError:
                logger.info("Cart changed concurrently, retrying", extra={"user_id": user_id})
                continue
            return cart, result
        raise ConflictError("Cart was modified concurrently. Please retry.")

    async def clear(self, user_id: str) -> None:
        await self.carts.update_one(
            {"user_id": user_id},
            {
                "$set": {
                    "items": [],
                    "total_items": 0,
                    "total_amount": Decimal128("0.00"),
                    "updated_at": datetime.utcnow(),
                },
                "$inc": {"version": 1},
            },
        )


class CartService:
    """Cart operations that need the live catalog: stock-checked adds and reconciliation."""

    def __init__(self, db, max_items: int = DEFAULT_MAX_ITEMS):
        self.repository = CartRepository(db, max_items=max_items)
        self.inventory = InventoryGuard(db)

    async def get_cart(self, user_id: str) -> Cart:
        return await self.repository.get_or_create(user_id)

    async def add_item(self, user_id: str, product_id: str, quantity: int) -> Cart:
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        availability = await self.inventory.check_availability(product_id, quantity)
        product = availability.product
        if not availability.available:
            raise StockError(
                f"Only {product.stock} items available in stock",
                product_id=product_id,
                available=product.stock,
                requested=quantity,
            )

        def change(cart: Cart):
            existing = cart.get_item(product.id)
            in_cart = existing.quantity if existing else 0
            if in_cart + quantity > product.stock:
                raise StockError(
                    f"Cannot add {quantity} items. Only {product.stock - in_cart} more available",
                    product_id=product.id,
                    available=product.stock - in_cart,
                    requested=quantity,
                )
            return cart.add_item(product, quantity, max_items=self.repository.max_items)

        cart, _ = await self.repository.mutate(user_id, change)
        return cart

    async def update_item(self, user_id: str, product_id: str, quantity: int) -> Cart:
        product_id = line_id(product_id)
        if quantity > 0:
            availability = await self.inventory.check_availability(product_id, quantity)
            if not availability.available:
                raise StockError(
                    f"Only {availability.current_stock} items available in stock",
                    product_id=product_id,
                    available=availability.current_stock,
                    requested=quantity,
                )

        def change(cart: Cart):
            if not cart.update_item_quantity(product_id, quantity):
                raise NotFoundError("Item not found in cart", product_id=product_id)

        cart, _ = await self.repository.mutate(user_id, change)
        return cart

    async def remove_item(self, user_id: str, product_id: str) -> Cart:
        product_id = line_id(product_id)

        def change(cart: Cart):
            if not cart.remove_item(product_id):
                raise NotFoundError("Item not found in cart", product_id=product_id)

        cart, _ = await self.repository.mutate(user_id, change)
        return cart

    async def clear(self, user_id: str) -> Cart:
        cart, _ = await self.repository.mutate(user_id, lambda c: c.clear())
        return cart

    async def reconcile(self, user_id: str) -> Tuple[Cart, List[dict]]:
        """Drop unavailable lines and shrink over-quantity lines to the live stock."""
        cart = await self.repository.get_or_create(user_id)
        if cart.is_empty:
            return cart, []

        products = {}
        for item in cart.items:
            try:
                products[item.product_id] = await self.inventory.get_product(item.product_id)
            except NotFoundError:
                products[item.product_id] = None

        def change(cart: Cart) -> List[dict]:
            issues = []
            for item in list(cart.items):
                if item.product_id not in products:
                    continue  # added after the catalog lookup
                product = products[item.product_id]
                if product is None:
                    issues.append({"product_id": item.product_id, "issue": "Product not found", "action": "remove"})
                    cart.remove_item(item.product_id)
                elif not product.is_active:
                    issues.append({
                        "product_id": item.product_id, "product_name": product.name,
                        "issue": "Product is no longer available", "action": "remove",
                    })
                    cart.remove_item(item.product_id)
                elif product.stock == 0:
                    issues.append({
                        "product_id": item.product_id, "product_name": product.name,
                        "issue": "Product is out of stock", "action": "remove",
                    })
                    cart.remove_item(item.product_id)
                elif item.quantity > product.stock:
                    issues.append({
                        "product_id": item.product_id, "product_name": product.name,
                        "issue": f"Only {product.stock} items available, but {item.quantity} requested",
                        "action": "reduce",
                        "available_stock": product.stock,
                        "requested_quantity": item.quantity,
                    })
                    cart.update_item_quantity(item.product_id, product.stock)
            return issues

        cart, issues = await self.repository.mutate(user_id, change)
        if issues:
            logger.info(f"Cart reconciled with {len(issues)} issue(s)", extra={"user_id": user_id})
        return cart, issues
