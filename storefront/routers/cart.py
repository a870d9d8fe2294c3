from fastapi import APIRouter, Depends, Request

from shared.security_config import WRITE_RATE_LIMIT, limiter
from shared.utils import SuccessResponse
from storefront.cart import CartService
from storefront.dependencies import get_cart_service, get_current_user
from storefront.models import Principal
from storefront.schemas import (
    CartItemAdd, CartItemUpdate, CartIssue, CartResponse, CartSummary, CartValidationResponse,
)

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=SuccessResponse[CartResponse])
@limiter.limit(WRITE_RATE_LIMIT)
async def get_cart(
    request: Request,
    user: Principal = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.get_cart(user.id)
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Cart retrieved successfully")


@router.get("/summary", response_model=SuccessResponse[CartSummary])
async def get_cart_summary(user: Principal = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    cart = await carts.repository.get(user.id)
    if cart is None:
        summary = CartSummary(total_items=0, total_amount=0, formatted_total="$0.00", item_count=0, is_empty=True)
    else:
        summary = CartSummary(
            total_items=cart.total_items,
            total_amount=cart.total_amount,
            formatted_total=cart.formatted_total,
            item_count=len(cart.items),
            is_empty=cart.is_empty,
        )
    return SuccessResponse(data=summary, message="Cart summary retrieved successfully")


@router.post("/validate", response_model=SuccessResponse[CartValidationResponse])
async def validate_cart(user: Principal = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    cart, issues = await carts.reconcile(user.id)
    return SuccessResponse(
        data=CartValidationResponse(
            is_valid=not issues,
            issues=[CartIssue(**issue) for issue in issues],
            updated_cart=CartResponse.from_cart(cart) if issues else None,
        ),
        message="Cart validation completed",
    )


@router.post("/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    user: Principal = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.add_item(user.id, item.product_id, item.quantity)
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Item added to cart successfully")


@router.put("/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    product_id: str,
    update: CartItemUpdate,
    user: Principal = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.update_item(user.id, product_id, update.quantity)
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Cart item updated successfully")


@router.delete("/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    product_id: str,
    user: Principal = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service),
):
    cart = await carts.remove_item(user.id, product_id)
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Item removed from cart successfully")


@router.delete("", response_model=SuccessResponse[CartResponse])
async def clear_cart(user: Principal = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    cart = await carts.clear(user.id)
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Cart cleared successfully")
