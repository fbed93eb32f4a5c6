import os

os.environ.setdefault("NOTIFICATIONS_DB_PATH", ":memory:")
os.environ.setdefault("PUSH_NOTIFICATIONS_ENABLED", "false")
os.environ.pop("DATABASE_URL", None)

from functools import partial

import mongomock
import pytest
from fastapi.testclient import TestClient

import books
import users
from database import ensure_indexes, get_db
from local_store import LocalStore
from main import app, get_dispatcher, get_local_store, get_push_gateway
from notifications import NotificationDispatcher, PushError


class RecordingGateway:
    """Push gateway fake; tokens listed in `failing` raise PushError."""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    def send(self, token, title, body, data=None):
        if token in self.failing:
            raise PushError(f"DeviceNotRegistered: {token}")
        self.sent.append({"token": token, "title": title, "body": body, "data": data or {}})
        return {"status": "ok"}

    def close(self):
        pass


@pytest.fixture
def db():
    database = mongomock.MongoClient()["fullybooked_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def store():
    with LocalStore(":memory:") as s:
        yield s


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dispatcher(db, store, gateway, sleeps):
    return NotificationDispatcher(
        store,
        gateway,
        token_lookup=partial(users.get_push_token, db),
        interval=2,
        sleep=sleeps.append,
    )


@pytest.fixture
def client(db, store, gateway, dispatcher):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_local_store] = lambda: store
    app.dependency_overrides[get_push_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    user, token = users.register_user(db, "alice", "alice@bookmail.com", "secret123")
    return {"user": user, "token": token, "headers": auth_header(token)}


@pytest.fixture
def other_customer(db):
    user, token = users.register_user(db, "bob", "bob@bookmail.com", "secret456")
    return {"user": user, "token": token, "headers": auth_header(token)}


@pytest.fixture
def admin(db):
    user, token = users.admin_create_user(db, "root", "root@bookmail.com", "adminpass", "admin")
    return {"user": user, "token": token, "headers": auth_header(token)}


@pytest.fixture
def make_book(db):
    def _make(**overrides):
        data = {
            "title": "The Hobbit",
            "author": "J.R.R. Tolkien",
            "category": "Adventure",
            "description": "There and back again.",
            "price": 500.0,
            "tag": "New",
            "stock": 10,
        }
        data.update(overrides)
        return books.create_book(db, data, ["https://img.bookmail.com/hobbit.jpg"])

    return _make
