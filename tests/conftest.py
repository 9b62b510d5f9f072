import mongomock
import pytest

import catalog
import database
from auth import Identity, get_password_hash


@pytest.fixture
def db(monkeypatch):
    mongo = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", mongo)
    return mongo


@pytest.fixture
def seeded(db):
    catalog.seed_if_empty()
    return {p["name"]: p for p in catalog.list_products()}


@pytest.fixture
def customer():
    return Identity(uid="user-1", name="Ana Reyes", email="ana@example.com")


@pytest.fixture
def other_customer():
    return Identity(uid="user-2", name="Ben Cruz", email="ben@example.com")


@pytest.fixture
def admin():
    return Identity(uid="admin-1", name="Admin", email="admin@example.com", role="admin")


@pytest.fixture
def anonymous():
    return Identity(uid="anon-123", role="anonymous", is_anonymous=True)


@pytest.fixture
def customer_info():
    return {"name": "Ana Reyes", "address": "12 Mabini St, Quezon City", "phone_number": "+63 917 123 4567"}


@pytest.fixture
def make_product(db):
    def _make(name="Fern", price=150.0, stock=100, category="plants"):
        doc = {
            "name": name,
            "description": f"{name} description",
            "category": category,
            "image_url": f"https://img.example/{name}.png",
            "price": price,
            "stock": stock,
        }
        pid = database.collection("products").insert_one(doc).inserted_id
        return database.serialize_doc(database.collection("products").find_one({"_id": pid}))
    return _make


@pytest.fixture
def make_user(db):
    def _make(email, password="secret123", role="customer", name="Test User"):
        database.collection("user").insert_one({
            "name": name,
            "email": email,
            "password_hash": get_password_hash(password),
            "role": role,
        })
        return email, password
    return _make
