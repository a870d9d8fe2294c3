"""Inventory guard: catalog lookup and bounds-checked stock mutation.

Stock is only ever changed through single conditional updates against the
``products`` collection, so two concurrent orders cannot both consume the
last unit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime

from pymongo import ReturnDocument

from storefront.errors import NotFoundError, StockError, ValidationError
from storefront.models import ProductDB, str_to_oid

logger = logging.getLogger(__name__)

STOCK_OPERATIONS = ("set", "add", "subtract")


@dataclass(frozen=True)
class Availability:
    product: ProductDB
    requested: int

    @property
    def current_stock(self) -> int:
        return self.product.stock

    @property
    def available(self) -> bool:
        return self.requested <= self.product.stock


class InventoryGuard:
    def __init__(self, db):
        self.products = db.products

    async def get_product(self, product_id: str) -> ProductDB:
        doc = await self.products.find_one({"_id": str_to_oid(product_id, "Product")})
        if not doc:
            raise NotFoundError("Product not found", product_id=product_id)
        return ProductDB.from_mongo(doc)

    async def check_availability(self, product_id: str, requested_qty: int) -> Availability:
        """Look up a sellable product and compare stock with ``requested_qty``.

        Missing or inactive products raise NotFoundError. Short stock is not an
        error here: the result carries the live count so callers can report
        the exact shortfall.
        """
        product = await self.get_product(product_id)
        if not product.is_active:
            raise NotFoundError(
                f'Product "{product.name}" is no longer available', product_id=product_id
            )
        return Availability(product=product, requested=requested_qty)

    async def reserve(self, product_id: str, qty: int) -> ProductDB:
        if qty <= 0:
            raise ValidationError("Quantity must be a positive integer")
        oid = str_to_oid(product_id, "Product")

        doc = await self.products.find_one_and_update(
            {"_id": oid, "is_active": True, "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return ProductDB.from_mongo(doc)

        # The conditional update matched nothing; find out why.
        current = await self.products.find_one({"_id": oid})
        if not current or not current.get("is_active", False):
            raise NotFoundError("Product is no longer available", product_id=product_id)
        logger.warning(
            "Reservation refused: insufficient stock",
            extra={"product_id": product_id},
        )
        raise StockError(
            f'Insufficient stock for "{current["name"]}". Only {current["stock"]} available.',
            product_id=product_id,
            available=current["stock"],
            requested=qty,
        )

    async def release(self, product_id: str, qty: int) -> ProductDB:
        if qty <= 0:
            raise ValidationError("Quantity must be a positive integer")
        doc = await self.products.find_one_and_update(
            {"_id": str_to_oid(product_id, "Product")},
            {"$inc": {"stock": qty}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Product not found", product_id=product_id)
        return ProductDB.from_mongo(doc)

    async def set_stock(self, product_id: str, stock: int) -> ProductDB:
        if stock < 0:
            raise ValidationError("Stock cannot be negative")
        doc = await self.products.find_one_and_update(
            {"_id": str_to_oid(product_id, "Product")},
            {"$set": {"stock": stock, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError("Product not found", product_id=product_id)
        return ProductDB.from_mongo(doc)

    async def adjust_stock(self, product_id: str, operation: str, amount: int) -> ProductDB:
        if operation == "set":
            return await self.set_stock(product_id, amount)
        if operation == "add":
            return await self.release(product_id, amount)
        if operation == "subtract":
            return await self.reserve(product_id, amount)
        raise ValidationError("Invalid operation. Use: set, add, or subtract", allowed=list(STOCK_OPERATIONS))
