from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from jose import JWTError, jwt
from bson import Decimal128
import uuid


# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "storefront_db"
    SECRET_KEY: str = "secret"
    REFRESH_SECRET_KEY: str = "refresh_secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Pricing
    TAX_RATE: Decimal = Decimal("0.08")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("50")
    SHIPPING_FEE: Decimal = Decimal("10")

    # Cart / checkout
    CART_MAX_ITEMS: int = 50
    DELIVERY_ESTIMATE_DAYS: int = 7
    PRICE_POLICY: str = "live"  # live | snapshot

    RATE_LIMIT_ENABLED: bool = True

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()


# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)


def to_bson(value: Any) -> Any:
    """Convert Decimals (at any depth) to Decimal128 so motor can encode them."""
    if isinstance(value, Decimal):
        return Decimal128(str(value))
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_bson(v) for v in value]
    return value


def from_bson_decimal(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, float):
        # Legacy documents written as doubles
        return Decimal(str(value))
    return value


# --- Authentication ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def _encode_token(data: dict, expire: datetime, secret: str, token_type: str) -> str:
    to_encode = data.copy()
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})
    to_encode.update({"exp": expire, "type": token_type})
    return jwt.encode(to_encode, secret, algorithm=settings.ALGORITHM)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode_token(data, expire, settings.SECRET_KEY, "access")


def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode_token(data, expire, settings.REFRESH_SECRET_KEY, "refresh")


def _decode_token(token: str, secret: str, token_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")
    if payload.get("type") != token_type or "sub" not in payload:
        raise UnauthorizedException("Could not validate credentials")
    return payload


def verify_token(token: str) -> dict:
    return _decode_token(token, settings.SECRET_KEY, "access")


def verify_refresh_token(token: str) -> dict:
    return _decode_token(token, settings.REFRESH_SECRET_KEY, "refresh")


# --- Response Models ---
T = TypeVar("T")


class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )


# --- Decorators/Dependencies ---
async def require_auth(authorization: str = Header(...)) -> dict:
    scheme, _, param = authorization.partition(" ")
    if not authorization or scheme.lower() != "bearer" or not param:
        raise UnauthorizedException(detail="Invalid authentication credentials")
    return verify_token(param)
