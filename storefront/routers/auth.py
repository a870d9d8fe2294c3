from datetime import datetime, timedelta
import logging

from fastapi import APIRouter, Depends, Request, status
from pymongo.errors import DuplicateKeyError

from shared.security_config import LOGIN_RATE_LIMIT, limiter
from shared.utils import (
    settings, get_password_hash, verify_password, create_access_token,
    create_refresh_token, verify_refresh_token, require_auth,
    SuccessResponse, UnauthorizedException,
)
from storefront.dependencies import get_current_user, get_db, load_active_user
from storefront.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from storefront.models import Principal, UserDB, str_to_oid
from storefront.schemas import (
    AuthResponse, PasswordChange, ProfileUpdate, RefreshTokenRequest, Token,
    UserLogin, UserRegister, UserResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def issue_tokens(user_id: str, role: str) -> Token:
    access_token = create_access_token(
        data={"sub": user_id, "role": role},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    refresh_token = create_refresh_token(data={"sub": user_id, "role": role})
    return Token(access_token=access_token, refresh_token=refresh_token, token_type="bearer")


async def revoke(db, payload: dict) -> None:
    if "jti" not in payload:
        return
    await db.revoked_tokens.update_one(
        {"jti": payload["jti"]},
        {"$setOnInsert": {"exp": datetime.utcfromtimestamp(payload["exp"])}},
        upsert=True,
    )


async def load_user(db, user_id: str) -> UserDB:
    user = UserDB.from_mongo(await db.users.find_one({"_id": str_to_oid(user_id, "User")}))
    if not user:
        raise NotFoundError("User not found")
    return user


@router.post("/register", response_model=SuccessResponse[AuthResponse], status_code=status.HTTP_201_CREATED)
async def register(user: UserRegister, db=Depends(get_db)):
    if user.role == "admin":
        raise AuthorizationError("Cannot register as admin user")

    email = user.email.lower()
    if await db.users.find_one({"email": email}):
        raise ConflictError("User with this email already exists")

    user_db = UserDB(
        email=email,
        password_hash=get_password_hash(user.password),
        full_name=user.full_name,
        role="user",
        phone=user.phone,
        address=user.address,
    )
    try:
        result = await db.users.insert_one(user_db.to_mongo())
    except DuplicateKeyError:
        raise ConflictError("User with this email already exists")
    user_db.id = str(result.inserted_id)

    logger.info("User registered", extra={"user_id": user_db.id})
    return SuccessResponse(
        data=AuthResponse(user=UserResponse.from_user(user_db), tokens=issue_tokens(user_db.id, user_db.role)),
        message="User registered successfully",
    )


@router.post("/login", response_model=SuccessResponse[Token])
@limiter.limit(LOGIN_RATE_LIMIT)
async def login(user_credentials: UserLogin, request: Request, db=Depends(get_db)):
    user = UserDB.from_mongo(await db.users.find_one({"email": user_credentials.email.lower()}))
    if not user or not verify_password(user_credentials.password, user.password_hash):
        raise UnauthorizedException("Incorrect email or password")
    if not user.is_active:
        raise UnauthorizedException("Account is deactivated")

    return SuccessResponse(data=issue_tokens(user.id, user.role), message="Login successful")


@router.post("/refresh", response_model=SuccessResponse[Token])
async def refresh_token(body: RefreshTokenRequest, db=Depends(get_db)):
    payload = verify_refresh_token(body.refresh_token)
    if "jti" in payload:
        is_revoked = await db.revoked_tokens.find_one({"jti": payload["jti"]})
        if is_revoked:
            raise UnauthorizedException("Refresh token has been revoked")

    user = await load_active_user(db, payload["sub"])

    # Rotate: the presented refresh token cannot be used again
    await revoke(db, payload)
    return SuccessResponse(data=issue_tokens(user.id, user.role))


@router.get("/profile", response_model=SuccessResponse[UserResponse])
async def get_profile(user: Principal = Depends(get_current_user), db=Depends(get_db)):
    user_db = await load_user(db, user.id)
    return SuccessResponse(data=UserResponse.from_user(user_db), message="Profile retrieved successfully")


@router.put("/profile", response_model=SuccessResponse[UserResponse])
async def update_profile(
    profile_update: ProfileUpdate,
    user: Principal = Depends(get_current_user),
    db=Depends(get_db),
):
    update_data = {k: v for k, v in profile_update.model_dump().items() if v is not None}
    if "email" in update_data:
        update_data["email"] = update_data["email"].lower()
        taken = await db.users.find_one({"email": update_data["email"], "_id": {"$ne": str_to_oid(user.id, "User")}})
        if taken:
            raise ConflictError("Email is already taken by another user")

    if update_data:
        try:
            await db.users.update_one({"_id": str_to_oid(user.id, "User")}, {"$set": update_data})
        except DuplicateKeyError:
            raise ConflictError("Email is already taken by another user")

    user_db = await load_user(db, user.id)
    return SuccessResponse(data=UserResponse.from_user(user_db), message="Profile updated successfully")


@router.put("/change-password", response_model=SuccessResponse[dict])
async def change_password(
    body: PasswordChange,
    user: Principal = Depends(get_current_user),
    db=Depends(get_db),
):
    user_db = await load_user(db, user.id)
    if not verify_password(body.current_password, user_db.password_hash):
        raise UnauthorizedException("Current password is incorrect")
    if verify_password(body.new_password, user_db.password_hash):
        raise ValidationError("New password must be different from current password")

    await db.users.update_one(
        {"_id": str_to_oid(user.id, "User")},
        {"$set": {"password_hash": get_password_hash(body.new_password)}},
    )
    return SuccessResponse(data={}, message="Password changed successfully")


@router.post("/logout", response_model=SuccessResponse[dict])
async def logout(
    body: RefreshTokenRequest,
    payload: dict = Depends(require_auth),
    user: Principal = Depends(get_current_user),
    db=Depends(get_db),
):
    refresh_payload = verify_refresh_token(body.refresh_token)
    if refresh_payload["sub"] != user.id:
        raise UnauthorizedException("Refresh token does not belong to this user")

    await revoke(db, payload)
    await revoke(db, refresh_payload)

    return SuccessResponse(data={}, message="Logged out successfully")
