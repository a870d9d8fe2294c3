from bson import ObjectId
from fastapi import Depends, Request

from shared.utils import require_auth, settings, UnauthorizedException
from storefront.cart import CartService
from storefront.checkout import CheckoutOrchestrator
from storefront.errors import AuthorizationError
from storefront.inventory import InventoryGuard
from storefront.models import Principal, UserDB
from storefront.pricing import PricingConfig, PricingEngine


def get_db(request: Request):
    return request.app.mongodb


async def load_active_user(db, user_id: str) -> UserDB:
    """The stored account behind a token; its role wins over the token's claim."""
    doc = await db.users.find_one({"_id": ObjectId(user_id)}) if ObjectId.is_valid(user_id) else None
    user = UserDB.from_mongo(doc)
    if not user:
        raise UnauthorizedException("User no longer exists")
    if not user.is_active:
        raise UnauthorizedException("Account is deactivated")
    return user


async def get_current_user(request: Request, payload: dict = Depends(require_auth)) -> Principal:
    db = request.app.mongodb
    if "jti" in payload:
        is_revoked = await db.revoked_tokens.find_one({"jti": payload["jti"]})
        if is_revoked:
            raise UnauthorizedException("Token has been revoked")
    user = await load_active_user(db, payload["sub"])
    request.state.user_id = user.id
    return Principal(id=user.id, role=user.role)


async def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    if not user.is_admin:
        raise AuthorizationError("Access denied. Admin privileges required.")
    return user


def get_pricing_engine() -> PricingEngine:
    return PricingEngine(PricingConfig.from_settings(settings))


def get_inventory(db=Depends(get_db)) -> InventoryGuard:
    return InventoryGuard(db)


def get_cart_service(db=Depends(get_db)) -> CartService:
    return CartService(db, max_items=settings.CART_MAX_ITEMS)


def get_checkout(db=Depends(get_db), pricing: PricingEngine = Depends(get_pricing_engine)) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        db,
        pricing,
        price_policy=settings.PRICE_POLICY,
        delivery_days=settings.DELIVERY_ESTIMATE_DAYS,
        max_cart_items=settings.CART_MAX_ITEMS,
    )
