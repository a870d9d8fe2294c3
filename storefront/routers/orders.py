from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from shared.utils import SuccessResponse
from storefront.checkout import CheckoutOrchestrator
from storefront.dependencies import get_checkout, get_current_user, require_admin
from storefront.models import Principal
from storefront.orders import ORDER_STATUSES, PAYMENT_STATUSES
from storefront.schemas import (
    OrderCancel, OrderCreate, OrderListResponse, OrderResponse, OrderStats,
    OrderStatusUpdate, Pagination,
)

router = APIRouter(prefix="/orders", tags=["orders"])

STATUS_PATTERN = "^(" + "|".join(ORDER_STATUSES) + ")$"
PAYMENT_STATUS_PATTERN = "^(" + "|".join(PAYMENT_STATUSES) + ")$"


@router.post("", response_model=SuccessResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
async def place_order(
    order_in: OrderCreate,
    user: Principal = Depends(get_current_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    order = await checkout.place_order(
        user,
        payment_method=order_in.payment_method,
        shipping_address=order_in.shipping_address,
        notes=order_in.notes,
    )
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order placed successfully")


@router.get("", response_model=SuccessResponse[OrderListResponse])
async def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[str] = Query(None, alias="status", pattern=STATUS_PATTERN),
    user: Principal = Depends(get_current_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    orders, total = await checkout.orders.list(user_id=user.id, order_status=order_status, page=page, limit=limit)
    return SuccessResponse(
        data=OrderListResponse(
            orders=[OrderResponse.from_order(o) for o in orders],
            pagination=Pagination.build(page, limit, total),
        ),
        message="User orders retrieved successfully",
    )


@router.get("/all", response_model=SuccessResponse[OrderListResponse])
async def list_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[str] = Query(None, alias="status", pattern=STATUS_PATTERN),
    payment_status: Optional[str] = Query(None, pattern=PAYMENT_STATUS_PATTERN),
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    admin: Principal = Depends(require_admin),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    orders, total = await checkout.orders.list(
        order_status=order_status,
        payment_status=payment_status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return SuccessResponse(
        data=OrderListResponse(
            orders=[OrderResponse.from_order(o) for o in orders],
            pagination=Pagination.build(page, limit, total),
        ),
        message="All orders retrieved successfully",
    )


@router.get("/stats", response_model=SuccessResponse[OrderStats])
async def order_stats(admin: Principal = Depends(require_admin), checkout: CheckoutOrchestrator = Depends(get_checkout)):
    stats = await checkout.orders.stats()
    stats["recent_orders"] = [OrderResponse.from_order(o) for o in stats["recent_orders"]]
    return SuccessResponse(data=OrderStats(**stats), message="Order statistics retrieved successfully")


@router.get("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: Principal = Depends(get_current_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    order = await checkout.get_order(user, order_id)
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order retrieved successfully")


@router.patch("/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    admin: Principal = Depends(require_admin),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    order = await checkout.update_status(admin, order_id, status_update.status, status_update.reason)
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order status updated successfully")


@router.patch("/{order_id}/payment", response_model=SuccessResponse[OrderResponse])
async def mark_order_paid(
    order_id: str,
    admin: Principal = Depends(require_admin),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    order = await checkout.mark_paid(admin, order_id)
    return SuccessResponse(data=OrderResponse.from_order(order), message="Payment recorded")


@router.patch("/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(
    order_id: str,
    body: Optional[OrderCancel] = None,
    user: Principal = Depends(get_current_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    reason = body.reason if body else None
    order = await checkout.cancel_order(user, order_id, reason)
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order cancelled successfully")
