from datetime import datetime
from decimal import Decimal
from typing import Optional, List
import logging
import re
import secrets
import time

from bson import Decimal128
from fastapi import APIRouter, Depends, Query, Request, status
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.security_config import WRITE_RATE_LIMIT, limiter
from shared.utils import SuccessResponse, to_bson
from storefront.dependencies import get_db, get_inventory, require_admin
from storefront.errors import ConflictError, NotFoundError, ValidationError
from storefront.inventory import InventoryGuard
from storefront.models import PRODUCT_CATEGORIES, Principal, ProductDB, str_to_oid
from storefront.schemas import (
    Pagination, ProductCreate, ProductListResponse, ProductResponse,
    ProductUpdate, StockUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])

SORTABLE_FIELDS = ("created_at", "price", "name", "stock")


def generate_sku(category: str) -> str:
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"{category[:3].upper()}-{timestamp}{secrets.token_hex(2).upper()}"


async def list_active_products(db, query: dict, page: int, limit: int, sort_by: str, sort_order: str) -> ProductListResponse:
    if sort_by not in SORTABLE_FIELDS:
        raise ValidationError(f"Cannot sort products by '{sort_by}'")
    query = {"is_active": True, **query}
    skip = (page - 1) * limit
    total = await db.products.count_documents(query)
    cursor = db.products.find(query).sort(sort_by, 1 if sort_order == "asc" else -1).skip(skip).limit(limit)
    docs = await cursor.to_list(length=limit)
    return ProductListResponse(
        products=[ProductResponse.from_product(ProductDB.from_mongo(doc)) for doc in docs],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("", response_model=SuccessResponse[ProductListResponse])
@limiter.limit(WRITE_RATE_LIMIT)
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = None,
    in_stock: Optional[bool] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db=Depends(get_db),
):
    query = {}
    if category:
        query["category"] = category

    price_query = {}
    if min_price is not None:
        price_query["$gte"] = Decimal128(str(min_price))
    if max_price is not None:
        price_query["$lte"] = Decimal128(str(max_price))
    if price_query:
        query["price"] = price_query

    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}
    if in_stock:
        query["stock"] = {"$gt": 0}

    data = await list_active_products(db, query, page, limit, sort_by, sort_order)
    return SuccessResponse(data=data, message="Products retrieved successfully")


@router.get("/categories", response_model=SuccessResponse[List[str]])
async def list_categories():
    return SuccessResponse(data=PRODUCT_CATEGORIES)


@router.get("/category/{category}", response_model=SuccessResponse[ProductListResponse])
async def list_products_by_category(
    category: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db=Depends(get_db),
):
    if category not in PRODUCT_CATEGORIES:
        raise ValidationError(f"Invalid category: '{category}'", allowed=PRODUCT_CATEGORIES)
    data = await list_active_products(db, {"category": category}, page, limit, "created_at", "desc")
    return SuccessResponse(data=data)


@router.get("/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(WRITE_RATE_LIMIT)
async def get_product(product_id: str, request: Request, db=Depends(get_db)):
    doc = await db.products.find_one({"_id": str_to_oid(product_id, "Product"), "is_active": True})
    if not doc:
        raise NotFoundError("Product not found")
    return SuccessResponse(data=ProductResponse.from_product(ProductDB.from_mongo(doc)))


@router.post("", response_model=SuccessResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
async def create_product(product: ProductCreate, user: Principal = Depends(require_admin), db=Depends(get_db)):
    product_db = ProductDB(
        created_by=user.id,
        **product.model_dump(exclude={"sku"}),
        sku=product.sku or generate_sku(product.category),
    )
    try:
        result = await db.products.insert_one(product_db.to_mongo())
    except DuplicateKeyError:
        raise ConflictError(f"Duplicate value for sku: '{product_db.sku}'. This sku already exists.", field="sku")
    product_db.id = str(result.inserted_id)

    logger.info("Product created", extra={"product_id": product_db.id, "user_id": user.id})
    return SuccessResponse(data=ProductResponse.from_product(product_db), message="Product created successfully")


@router.put("/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: str,
    product_update: ProductUpdate,
    user: Principal = Depends(require_admin),
    db=Depends(get_db),
):
    update_data = {k: v for k, v in product_update.model_dump().items() if v is not None}
    update_data["updated_at"] = datetime.utcnow()
    try:
        doc = await db.products.find_one_and_update(
            {"_id": str_to_oid(product_id, "Product")},
            {"$set": to_bson(update_data)},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError(f"Duplicate value for sku: '{update_data.get('sku')}'. This sku already exists.", field="sku")
    if not doc:
        raise NotFoundError("Product not found")
    return SuccessResponse(data=ProductResponse.from_product(ProductDB.from_mongo(doc)), message="Product updated successfully")


@router.patch("/{product_id}/stock", response_model=SuccessResponse[ProductResponse])
async def update_product_stock(
    product_id: str,
    stock_update: StockUpdate,
    user: Principal = Depends(require_admin),
    inventory: InventoryGuard = Depends(get_inventory),
):
    product = await inventory.adjust_stock(product_id, stock_update.operation, stock_update.stock)
    logger.info(
        f"Stock {stock_update.operation} {stock_update.stock}",
        extra={"product_id": product_id, "user_id": user.id},
    )
    return SuccessResponse(data=ProductResponse.from_product(product), message="Product stock updated successfully")


@router.delete("/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(product_id: str, user: Principal = Depends(require_admin), db=Depends(get_db)):
    result = await db.products.update_one(
        {"_id": str_to_oid(product_id, "Product")},
        {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Product not found")
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")
