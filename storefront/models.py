from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.utils import from_bson_decimal, to_bson
from storefront.errors import NotFoundError
from storefront.pricing import format_currency

PRODUCT_CATEGORIES = [
    "Electronics",
    "Clothing",
    "Books",
    "Home & Garden",
    "Sports",
    "Beauty",
    "Toys",
    "Food",
    "Other",
]

ROLES = ("user", "admin")


class MongoModel(BaseModel):
    """Base for documents stored in Mongo: `_id` is exposed as a string `id`."""
    id: Optional[str] = Field(None, alias="_id")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("id", mode="before")
    @classmethod
    def stringify_object_id(cls, v):
        if isinstance(v, ObjectId):
            return str(v)
        return v

    @classmethod
    def from_mongo(cls, doc: Optional[dict]):
        if doc is None:
            return None
        return cls.model_validate(doc)

    def to_mongo(self) -> dict:
        doc = self.model_dump(by_alias=True, exclude={"id"})
        return to_bson(doc)


class ProductDB(MongoModel):
    name: str
    description: Optional[str] = None
    price: Decimal
    category: str
    stock: int = 0
    images: List[str] = []
    brand: Optional[str] = None
    sku: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("price", mode="before")
    @classmethod
    def decode_price(cls, v):
        return from_bson_decimal(v)

    @property
    def in_stock(self) -> bool:
        return self.stock > 0

    @property
    def formatted_price(self) -> str:
        return format_currency(self.price)


class UserDB(MongoModel):
    email: EmailStr
    password_hash: str
    full_name: str
    role: str = "user"
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("role")
    @classmethod
    def check_role(cls, v):
        if v not in ROLES:
            raise ValueError(f"Role must be one of: {', '.join(ROLES)}")
        return v


class Principal(BaseModel):
    """Authenticated caller as seen by the core."""
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def str_to_oid(id: str, resource: str = "Resource") -> ObjectId:
    try:
        return ObjectId(id)
    except Exception:
        raise NotFoundError(f"{resource} not found. Invalid ID format.")
