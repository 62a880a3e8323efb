"""
Shared fixtures: an in-memory Mongo, the FastAPI app wired to it, and users.
"""

import functools

import bcrypt
import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
import main
from auth import create_token
from database import ensure_indexes, get_db
from notifications import NotificationTransport
from storage import LocalImageStore
from users import _insert_user


class FakePush:
    def __init__(self):
        self.sent = []

    async def send(self, tokens, title, body, data=None):
        tokens = list(tokens)
        self.sent.append({"tokens": tokens, "title": title, "body": body, "data": data})
        return len(tokens)


class FakeMailer:
    def __init__(self):
        self.invites = []

    async def send_invite(self, email, name, admin_name):
        self.invites.append((email, name, admin_name))


# ============================================================================
# Storage
# ============================================================================

@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(bcrypt, "gensalt", functools.partial(bcrypt.gensalt, rounds=4))


@pytest.fixture
def db():
    store = mongomock.MongoClient()["jewelry-test"]
    ensure_indexes(store)
    return store


# ============================================================================
# Application
# ============================================================================

@pytest.fixture
def app_state(tmp_path):
    return {
        "transport": NotificationTransport(),
        "push": FakePush(),
        "mailer": FakeMailer(),
        "image_store": LocalImageStore(str(tmp_path), "https://cdn.bijoux.fr", 1024),
    }


@pytest.fixture
def client(db, app_state, monkeypatch, tmp_path):
    monkeypatch.setattr(database, "init_db", lambda: None)
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path))
    main.app.dependency_overrides[get_db] = lambda: db
    for name, value in app_state.items():
        setattr(main.app.state, name, value)
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


# ============================================================================
# Users
# ============================================================================

@pytest.fixture
def admin(db):
    return _insert_user(db, "Margot Admin", "admin@bijoux.fr", "secret123", role="admin")


@pytest.fixture
def alice(db):
    return _insert_user(db, "Alice Martin", "alice@bijoux.fr", "secret123", phone="0601020304")


@pytest.fixture
def bob(db):
    return _insert_user(db, "Bob Durand", "bob@bijoux.fr", "secret123")


@pytest.fixture
def auth():
    def headers(user):
        return {"Authorization": f"Bearer {create_token(user)}"}
    return headers
