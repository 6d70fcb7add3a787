import os
import tempfile

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="storefront-uploads-"))
os.environ.setdefault("APP_ENV", "test")

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, get_password_hash
from database import get_db, utcnow
from main import app

PASSWORD = "secret123"


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    yield client["storefront_test"]
    client.drop_database("storefront_test")


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email, name="Test User", role="user", is_active=True):
    user = {
        "name": name,
        "email": email,
        "password_hash": get_password_hash(PASSWORD),
        "role": role,
        "is_active": is_active,
        "last_login": None,
        "created_at": utcnow(),
    }
    user["_id"] = db["user"].insert_one(user).inserted_id
    return user


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


@pytest.fixture
def customer(db):
    return make_user(db, "sam@example.com", name="Sam Shopper")


@pytest.fixture
def admin_user(db):
    return make_user(db, "admin@example.com", name="Store Admin", role="admin")


@pytest.fixture
def customer_headers(customer):
    return bearer(customer)


@pytest.fixture
def admin_headers(admin_user):
    return bearer(admin_user)


@pytest.fixture
def user_factory(db):
    def factory(email, **kwargs):
        return make_user(db, email, **kwargs)
    return factory


@pytest.fixture
def auth_headers():
    return bearer


@pytest.fixture
def category(db):
    doc = {
        "name": "T-Shirts",
        "slug": "t-shirts",
        "description": "Everyday tees",
        "image": None,
        "is_active": True,
        "sort_order": 0,
        "created_at": utcnow(),
    }
    doc["_id"] = db["category"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def product(db, category):
    doc = {
        "name": "Classic Tee",
        "description": "Soft cotton tee",
        "price": 50.0,
        "original_price": None,
        "discount_price": None,
        "sale_price": None,
        "on_sale": False,
        "category": str(category["_id"]),
        "brand": "Basics",
        "images": [{"url": "/uploads/tee.jpg", "alt": "Classic Tee"}],
        "tags": ["cotton"],
        "featured": False,
        "variants": [
            {"size": "M", "color": "Black", "color_code": "#000000", "stock": 5, "sku": "TEE-M-BLK"},
            {"size": "L", "color": "Black", "color_code": "#000000", "stock": 3, "sku": "TEE-L-BLK"},
        ],
        "total_stock": 8,
        "reviews": [],
        "rating": 0.0,
        "num_reviews": 0,
        "status": "active",
        "created_at": utcnow(),
    }
    doc["_id"] = db["product"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def shipping_address():
    return {
        "first_name": "Sam",
        "last_name": "Shopper",
        "email": "sam@example.com",
        "phone": "555-0100",
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "zip_code": "62701",
        "country": "US",
    }


@pytest.fixture
def order_payload(product, shipping_address):
    def build(quantity=2, size="M", color="Black", **extra):
        payload = {
            "items": [
                {"product_id": str(product["_id"]), "quantity": quantity, "size": size, "color": color}
            ],
            "shipping_address": dict(shipping_address),
            "payment_method": "stripe",
        }
        payload.update(extra)
        return payload
    return build


def variant_stock(db, product_id, size, color):
    product = db["product"].find_one({"_id": product_id})
    for v in product["variants"]:
        if v["size"] == size and v["color"] == color:
            return v["stock"], product["total_stock"]
    raise AssertionError(f"no variant {size}/{color}")


@pytest.fixture
def stock_of(db):
    def lookup(product_id, size="M", color="Black"):
        return variant_stock(db, product_id, size, color)
    return lookup
