"""Order aggregate and persistence.

An order is a value snapshot of a completed checkout. Its items never change
after creation; only the status fields move, and only along ``TRANSITIONS``.
"""
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from shared.utils import from_bson_decimal, to_bson
from storefront.errors import InvalidTransitionError, NotFoundError, ValidationError
from storefront.models import MongoModel, str_to_oid
from storefront.pricing import Totals, format_currency, to_money

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
PAYMENT_METHODS = ("Cash", "Online", "Card", "PayPal", "Bank Transfer")

TRANSITIONS = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("processing", "cancelled"),
    "processing": ("shipped",),
    "shipped": ("delivered",),
    "delivered": (),
    "cancelled": (),
}
CANCELLABLE_STATUSES = ("pending", "confirmed")

ORDER_NUMBER_ATTEMPTS = 5
SORTABLE_FIELDS = ("created_at", "updated_at", "order_status", "payment_status", "total_items")


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class ShippingAddress(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    zip_code: str
    country: str = "United States"
    phone: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def strip_fields(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("full_name", "address_line1", "city", "state", "zip_code", "country")
    @classmethod
    def required_not_blank(cls, v, info):
        if not v:
            raise ValueError(f"Shipping address {info.field_name} is required")
        return v


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: Decimal

    model_config = ConfigDict(frozen=True)

    @field_validator("price", "subtotal", mode="before")
    @classmethod
    def decode_money(cls, v):
        return from_bson_decimal(v)

    @model_validator(mode="after")
    def check_subtotal(self):
        if self.subtotal != to_money(self.price) * self.quantity:
            raise ValueError(f"Subtotal of {self.name} does not match price x quantity")
        return self


class Order(MongoModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    total_items: int
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    payment_method: str
    payment_status: str = "pending"
    order_status: str = "pending"
    shipping_address: ShippingAddress
    notes: Optional[str] = Field(None, max_length=500)
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("subtotal", "tax", "shipping", "total", mode="before")
    @classmethod
    def decode_money(cls, v):
        return from_bson_decimal(v)

    @field_validator("payment_method")
    @classmethod
    def check_payment_method(cls, v):
        if v not in PAYMENT_METHODS:
            raise ValueError("Please select a valid payment method")
        return v

    @field_validator("payment_status")
    @classmethod
    def check_payment_status(cls, v):
        if v not in PAYMENT_STATUSES:
            raise ValueError("Please select a valid payment status")
        return v

    @field_validator("order_status")
    @classmethod
    def check_order_status(cls, v):
        if v not in ORDER_STATUSES:
            raise ValueError("Please select a valid order status")
        return v

    @model_validator(mode="after")
    def check_totals(self):
        if not self.items:
            raise ValueError("Order must contain at least one item")
        if self.subtotal != sum((item.subtotal for item in self.items), Decimal("0.00")):
            raise ValueError("Order subtotal does not match its items")
        if self.total != self.subtotal + self.tax + self.shipping:
            raise ValueError("Order total must equal subtotal + tax + shipping")
        if self.total_items != sum(item.quantity for item in self.items):
            raise ValueError("Order item count does not match its items")
        return self

    @classmethod
    def create(
        cls,
        user_id: str,
        items: List[OrderItem],
        totals: Totals,
        payment_method: str,
        shipping_address,
        notes: Optional[str] = None,
        delivery_days: int = 7,
        now: Optional[datetime] = None,
    ) -> "Order":
        now = now or datetime.utcnow()
        try:
            return cls(
                order_number=generate_order_number(now),
                user_id=user_id,
                items=items,
                total_items=totals.total_items,
                subtotal=totals.subtotal,
                tax=totals.tax,
                shipping=totals.shipping,
                total=totals.total,
                payment_method=payment_method,
                shipping_address=shipping_address,
                notes=notes.strip() if notes else None,
                estimated_delivery=now + timedelta(days=delivery_days),
                created_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid order: " + "; ".join(err["msg"] for err in e.errors())
            ) from e

    @property
    def can_be_cancelled(self) -> bool:
        return self.order_status in CANCELLABLE_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.order_status == "delivered" and self.payment_status == "completed"

    @property
    def formatted_total(self) -> str:
        return format_currency(self.total)

    def can_transition_to(self, status: str) -> bool:
        return status in TRANSITIONS.get(self.order_status, ())

    def transition_to(self, status: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        """Move to ``status`` and return the changed fields for persistence."""
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status '{status}'")
        if not self.can_transition_to(status):
            raise InvalidTransitionError(self.order_status, status)

        now = now or datetime.utcnow()
        changes = {"order_status": status, "updated_at": now}
        if status == "delivered":
            changes["delivered_at"] = now
            changes["payment_status"] = "completed"
        elif status == "cancelled":
            changes["cancelled_at"] = now
            changes["cancellation_reason"] = reason

        for field, value in changes.items():
            setattr(self, field, value)
        return changes

    def mark_as_paid(self, now: Optional[datetime] = None) -> dict:
        if self.order_status == "cancelled":
            raise InvalidTransitionError(
                self.order_status, "paid", "Cannot mark a cancelled order as paid"
            )
        self.payment_status = "completed"
        self.updated_at = now or datetime.utcnow()
        return {"payment_status": self.payment_status, "updated_at": self.updated_at}


class OrderRepository:
    def __init__(self, db):
        self.orders = db.orders

    async def insert(self, order: Order) -> Order:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            try:
                result = await self.orders.insert_one(order.to_mongo())
            except DuplicateKeyError:
                logger.warning("Order number collision, regenerating", extra={"order_number": order.order_number})
                order.order_number = generate_order_number()
                continue
            order.id = str(result.inserted_id)
            return order
        raise RuntimeError("Could not allocate a unique order number")

    async def get(self, order_id: str) -> Order:
        doc = await self.orders.find_one({"_id": str_to_oid(order_id, "Order")})
        if not doc:
            raise NotFoundError("Order not found")
        return Order.from_mongo(doc)

    async def get_by_number(self, order_number: str) -> Order:
        doc = await self.orders.find_one({"order_number": order_number})
        if not doc:
            raise NotFoundError("Order not found")
        return Order.from_mongo(doc)

    async def apply_changes(self, order: Order, expected_status: str, changes: dict) -> bool:
        """Persist ``changes`` only if the stored status is still ``expected_status``."""
        result = await self.orders.update_one(
            {"_id": str_to_oid(order.id, "Order"), "order_status": expected_status},
            {"$set": to_bson(changes)},
        )
        return result.matched_count == 1

    async def delete(self, order_id: str) -> None:
        await self.orders.delete_one({"_id": str_to_oid(order_id, "Order")})

    async def list(
        self,
        user_id: Optional[str] = None,
        order_status: Optional[str] = None,
        payment_status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Order], int]:
        query = {}
        if user_id:
            query["user_id"] = user_id
        if order_status:
            query["order_status"] = order_status
        if payment_status:
            query["payment_status"] = payment_status
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort orders by '{sort_by}'")

        skip = (page - 1) * limit
        total = await self.orders.count_documents(query)
        cursor = (
            self.orders.find(query)
            .sort(sort_by, 1 if sort_order == "asc" else -1)
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [Order.from_mongo(doc) for doc in docs], total

    async def stats(self, recent: int = 5) -> dict:
        breakdown = {}
        for status in ORDER_STATUSES:
            breakdown[status] = await self.orders.count_documents({"order_status": status})

        revenue = Decimal("0.00")
        paid = await self.orders.find({"payment_status": "completed"}, {"total": 1}).to_list(length=None)
        for doc in paid:
            revenue += from_bson_decimal(doc["total"])

        cursor = self.orders.find({}).sort("created_at", -1).limit(recent)
        recent_orders = [Order.from_mongo(doc) for doc in await cursor.to_list(length=recent)]

        return {
            "total_orders": sum(breakdown.values()),
            "total_revenue": revenue,
            "status_breakdown": breakdown,
            "recent_orders": recent_orders,
        }
