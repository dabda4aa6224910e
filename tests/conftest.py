import os

import mongomock
import pytest
from bson import ObjectId

os.environ["ADMIN_EMAILS"] = ""

import database  # noqa: E402

database.db = mongomock.MongoClient()["duha_test"]

from fastapi.testclient import TestClient  # noqa: E402

import notifications  # noqa: E402
from auth import create_auth_token, hash_password  # noqa: E402
from database import create_document, ensure_indexes  # noqa: E402
from main import app  # noqa: E402
from schemas import Product, ProductImage, User  # noqa: E402

PASSWORD = "password123"


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, payload):
        self.sent.append(payload)

    def subjects(self):
        return [p["subject"] for p in self.sent]


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    ensure_indexes()
    yield database.db


@pytest.fixture(autouse=True)
def mailer():
    recorder = RecordingMailer()
    notifications.set_mailer(recorder)
    yield recorder
    notifications.set_mailer(None)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    def _make(email="alice@example.com", name="Alice", role="user", **extra):
        user = User(name=name, email=email, password_hash=hash_password(PASSWORD), role=role)
        user_id = create_document("user", user)
        if extra:
            database.db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": extra})
        doc = database.db["user"].find_one({"_id": ObjectId(user_id)})
        doc["id"] = user_id
        return doc
    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin_user(make_user):
    return make_user(email="admin@example.com", name="Admin", role="admin")


def headers_for(user_doc):
    return {"Authorization": f"Bearer {create_auth_token(str(user_doc['_id']))}"}


@pytest.fixture
def user_headers(user):
    return headers_for(user)


@pytest.fixture
def admin_headers(admin_user):
    return headers_for(admin_user)


@pytest.fixture
def make_product():
    def _make(name="Classic Tee", slug=None, base_price=25.0, **extra):
        product = Product(
            name=name,
            slug=slug or name.lower().replace(" ", "-"),
            description=f"{name} description",
            base_price=base_price,
            colors=["white", "black"],
            sizes=["S", "M", "L"],
            images=[ProductImage(url=f"https://img.example.com/{name}.jpg", alt=name, is_primary=True)],
            **extra,
        )
        product_id = create_document("product", product)
        return database.db["product"].find_one({"_id": ObjectId(product_id)})
    return _make


@pytest.fixture
def product(make_product):
    return make_product()


@pytest.fixture
def auth_headers():
    return headers_for
