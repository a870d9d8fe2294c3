from datetime import datetime
import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware
from shared.utils import get_db_client, settings, ErrorResponse, HealthResponse
from storefront.errors import StorefrontError
from storefront.routers import auth, cart, orders, products

# Setup Logging
logger = setup_logging("storefront")

app = FastAPI(title="Storefront API", version="1.0.0")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="storefront")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_KIND = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "capacity": status.HTTP_400_BAD_REQUEST,
    "stock": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "authorization": status.HTTP_403_FORBIDDEN,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    logger.warning(
        exc.message,
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "user_id": getattr(request.state, "user_id", None),
            "path": request.url.path,
            "status_code": status_code,
            "error_kind": exc.kind,
        },
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=exc.message, details=exc.to_dict()).model_dump(mode="json"),
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key", extra={"path": request.url.path, "error_kind": "conflict"})
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(error="Resource already exists", details={"kind": "conflict"}).model_dump(mode="json"),
    )


async def create_indexes(db) -> None:
    await db.users.create_index("email", unique=True)
    await db.revoked_tokens.create_index("jti")
    await db.revoked_tokens.create_index("exp", expireAfterSeconds=0)
    await db.products.create_index("sku", unique=True, sparse=True)
    await db.products.create_index("category")
    await db.products.create_index("is_active")
    await db.carts.create_index("user_id", unique=True)
    await db.orders.create_index("order_number", unique=True)
    await db.orders.create_index("user_id")
    await db.orders.create_index("order_status")
    await db.orders.create_index("payment_status")
    await db.orders.create_index("created_at")


@app.on_event("startup")
async def startup_db_client():
    if getattr(app, "mongodb_client", None) is None:
        app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.MONGO_DB_NAME]
    await create_indexes(app.mongodb)
    logger.info(f"Connected to database {settings.MONGO_DB_NAME}")


@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()


app.include_router(auth.router)
app.include_router(products.router)
app.include_router(cart.router)
app.include_router(orders.router)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    try:
        await app.mongodb_client.admin.command("ping")
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}",
        )

    return HealthResponse(
        service="storefront",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
    )
