import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import ensure_indexes, get_db
from notifications import get_notifier
from security import create_access_token, hash_password


class RecordingNotifier:
    """Stands in for the Resend sender; records what would have been sent."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def _record(self, kind, *args):
        if self.fail:
            raise RuntimeError("mail provider down")
        self.sent.append((kind,) + args)

    async def send_order_confirmation(self, order):
        await self._record("confirmation", order)

    async def send_order_status_change(self, order, previous_status):
        await self._record("status", order, previous_status)

    async def send_admin_new_order_alert(self, order, recipients):
        await self._record("admin_alert", order, recipients)

    async def send_account_verification(self, user, token):
        await self._record("verification", user, token)

    def kinds(self):
        return [s[0] for s in self.sent]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(db, notifier):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(name="Tee", price=25.0, cost_price=10.0, stock=5, sizes=None, colors=None, **extra):
        doc = {
            "name": name,
            "price": price,
            "stock": stock,
            "sizes": sizes or [],
            "colors": colors or [],
            "is_hidden": False,
            **extra,
        }
        if cost_price is not None:
            doc["cost_price"] = cost_price
        return str(db["product"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def make_user(db):
    def _make(email="member@mail.com", role="user", name="Member", password="secret123", **extra):
        uid = db["user"].insert_one({
            "name": name,
            "email": email,
            "password_hash": hash_password(password),
            "role": role,
            "is_verified": True,
            **extra,
        }).inserted_id
        return db["user"].find_one({"_id": uid})
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@mail.com", role="admin", name="Admin")


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


def shipping(email="buyer@mail.com", **overrides):
    info = {
        "name": "Rana Haddad",
        "email": email,
        "phone": "70123456",
        "address": "Hamra Street 12",
        "city": "Beirut",
        "country": "Lebanon",
    }
    info.update(overrides)
    return info


def line(product_id, quantity=1, price=25.0, **extra):
    return {"product_id": product_id, "quantity": quantity, "price": price, **extra}


def order_body(lines, email="buyer@mail.com", **extra):
    return {"order_items": lines, "shipping_info": shipping(email), **extra}
