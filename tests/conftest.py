"""Pytest fixtures for storefront tests."""

import asyncio
from decimal import Decimal

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from shared.security_config import limiter
from shared.utils import get_password_hash
from storefront.models import Principal, ProductDB
from storefront.pricing import PricingConfig, PricingEngine

limiter.enabled = False

SHIPPING_ADDRESS = {
    "full_name": "Jane Buyer",
    "address_line1": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
}


@pytest.fixture
def shipping_address():
    return dict(SHIPPING_ADDRESS)


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def db(mongo_client):
    """Fresh in-memory database per test."""
    return mongo_client["storefront_test"]


@pytest.fixture
def pricing():
    return PricingEngine(PricingConfig(
        tax_rate=Decimal("0.08"),
        free_shipping_threshold=Decimal("50"),
        shipping_fee=Decimal("10"),
    ))


@pytest.fixture
def buyer():
    return Principal(id="buyer-1", role="user")


@pytest.fixture
def other_buyer():
    return Principal(id="buyer-2", role="user")


@pytest.fixture
def admin():
    return Principal(id="admin-1", role="admin")


@pytest.fixture
def make_product(db):
    """Insert a product and return its id."""
    async def _make(name="Widget", price="12.50", stock=10, category="Electronics", is_active=True):
        product = ProductDB(name=name, price=Decimal(price), category=category, stock=stock, is_active=is_active)
        result = await db.products.insert_one(product.to_mongo())
        return str(result.inserted_id)

    return _make


@pytest.fixture
def stock_of(db):
    async def _stock(product_id):
        doc = await db.products.find_one({"_id": ObjectId(product_id)})
        return doc["stock"]

    return _stock


# --- HTTP ---

@pytest.fixture
def client(mongo_client, db):
    """TestClient bound to the in-memory database; startup hooks are not run."""
    from fastapi.testclient import TestClient
    from storefront.main import app

    app.mongodb_client = mongo_client
    app.mongodb = db
    return TestClient(app)


@pytest.fixture
def admin_headers(client, db):
    asyncio.run(db.users.insert_one({
        "email": "admin@example.com",
        "password_hash": get_password_hash("AdminPass1"),
        "full_name": "Store Admin",
        "role": "admin",
        "is_active": True,
    }))
    response = client.post("/auth/login", json={"email": "admin@example.com", "password": "AdminPass1"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture
def register(client):
    def _register(email="buyer@example.com", password="BuyerPass1", full_name="Jane Buyer"):
        response = client.post(
            "/auth/register",
            json={"email": email, "password": password, "full_name": full_name},
        )
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        return data, {"Authorization": f"Bearer {data['tokens']['access_token']}"}

    return _register
