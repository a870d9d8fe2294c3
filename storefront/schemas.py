from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict
from decimal import Decimal
from datetime import datetime

from shared.security_config import PASSWORD_RULES, sanitize_input, validate_password_strength
from storefront.cart import Cart
from storefront.models import PRODUCT_CATEGORIES, ProductDB, UserDB
from storefront.orders import ORDER_STATUSES, PAYMENT_METHODS, Order, ShippingAddress


# --- Auth ---
class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., min_length=1, max_length=100)
    role: str = Field("user", pattern="^(user|admin)$")
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator('password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError(PASSWORD_RULES)
        return v

    @field_validator('full_name', 'phone', 'address')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator('full_name', 'phone', 'address')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)

    @field_validator('new_password')
    def password_complexity(cls, v):
        if not validate_password_strength(v):
            raise ValueError(PASSWORD_RULES)
        return v


class UserResponse(BaseModel):
    id: str
    email: EmailStr
    full_name: str
    role: str
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: UserDB) -> "UserResponse":
        return cls(**user.model_dump(exclude={"password_hash"}))


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: Token


# --- Products ---
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    price: Decimal = Field(..., ge=0, decimal_places=2)
    category: str
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list, max_length=5)
    brand: Optional[str] = Field(None, max_length=50)
    sku: Optional[str] = None

    @field_validator('name', 'description', 'brand')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('sku')
    def normalize_sku(cls, v):
        return v.strip().upper() if v else v

    @field_validator('category')
    def check_category(cls, v):
        if v not in PRODUCT_CATEGORIES:
            raise ValueError('Please select a valid category')
        return v


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    category: Optional[str] = None
    images: Optional[List[str]] = Field(None, max_length=5)
    brand: Optional[str] = Field(None, max_length=50)
    sku: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator('name', 'description', 'brand')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

    @field_validator('sku')
    def normalize_sku(cls, v):
        return v.strip().upper() if v else v

    @field_validator('category')
    def check_category(cls, v):
        if v is not None and v not in PRODUCT_CATEGORIES:
            raise ValueError('Please select a valid category')
        return v


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)
    operation: str = Field("set", pattern="^(set|add|subtract)$")


class ProductResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    formatted_price: str
    category: str
    stock: int
    in_stock: bool
    images: List[str]
    brand: Optional[str] = None
    sku: Optional[str] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_product(cls, product: ProductDB) -> "ProductResponse":
        return cls(
            **product.model_dump(),
            formatted_price=product.formatted_price,
            in_stock=product.in_stock,
        )


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total: int
    has_next_page: bool
    has_prev_page: bool
    limit: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit
        return cls(
            current_page=page,
            total_pages=total_pages,
            total=total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
            limit=limit,
        )


class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    pagination: Pagination


# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)


class CartItemUpdate(BaseModel):
    # 0 removes the line
    quantity: int = Field(..., ge=0)


class CartItemResponse(BaseModel):
    product_id: str
    name: Optional[str] = None
    quantity: int
    price: Decimal
    subtotal: Decimal


class CartResponse(BaseModel):
    user_id: str
    items: List[CartItemResponse]
    total_items: int
    total_amount: Decimal
    formatted_total: str
    is_empty: bool
    updated_at: datetime

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartResponse":
        return cls(
            user_id=cart.user_id,
            items=[
                CartItemResponse(subtotal=item.subtotal, **item.model_dump())
                for item in cart.items
            ],
            total_items=cart.total_items,
            total_amount=cart.total_amount,
            formatted_total=cart.formatted_total,
            is_empty=cart.is_empty,
            updated_at=cart.updated_at,
        )


class CartSummary(BaseModel):
    total_items: int
    total_amount: Decimal
    formatted_total: str
    item_count: int
    is_empty: bool


class CartIssue(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    issue: str
    action: str
    available_stock: Optional[int] = None
    requested_quantity: Optional[int] = None


class CartValidationResponse(BaseModel):
    is_valid: bool
    issues: List[CartIssue]
    updated_cart: Optional[CartResponse] = None


# --- Orders ---
class ShippingAddressInput(ShippingAddress):
    @field_validator('*', mode='before')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class OrderCreate(BaseModel):
    payment_method: str
    shipping_address: ShippingAddressInput
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('payment_method')
    def check_payment_method(cls, v):
        if v not in PAYMENT_METHODS:
            raise ValueError('Please select a valid payment method')
        return v

    @field_validator('notes')
    def sanitize_notes(cls, v):
        return sanitize_input(v)


class OrderStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None

    @field_validator('status')
    def check_status(cls, v):
        if v not in ORDER_STATUSES:
            raise ValueError('Please select a valid order status')
        return v

    @field_validator('reason')
    def sanitize_reason(cls, v):
        return sanitize_input(v)


class OrderCancel(BaseModel):
    reason: Optional[str] = None

    @field_validator('reason')
    def sanitize_reason(cls, v):
        return sanitize_input(v)


class OrderItemResponse(BaseModel):
    product_id: str
    name: str
    price: Decimal
    quantity: int
    subtotal: Decimal


class OrderResponse(BaseModel):
    id: str
    order_number: str
    user_id: str
    items: List[OrderItemResponse]
    total_items: int
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    formatted_total: str
    payment_method: str
    payment_status: str
    order_status: str
    can_be_cancelled: bool
    is_completed: bool
    shipping_address: ShippingAddress
    notes: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            **order.model_dump(),
            formatted_total=order.formatted_total,
            can_be_cancelled=order.can_be_cancelled,
            is_completed=order.is_completed,
        )


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination


class OrderStats(BaseModel):
    total_orders: int
    total_revenue: Decimal
    status_breakdown: Dict[str, int]
    recent_orders: List[OrderResponse]
