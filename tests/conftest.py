import mongomock
import pytest
from fastapi.testclient import TestClient

from database import AUTH_SESSIONS, AUTH_USERS, ensure_indexes, get_db
from main import app


@pytest.fixture
def db():
    database = mongomock.MongoClient()["safe_routes_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Register a user with the auth store and return (user, auth headers)."""

    def _make(uid, email, name=None, phone=None):
        metadata = {"name": name} if name else {}
        db[AUTH_USERS].insert_one({"_id": uid, "email": email, "phone": phone, "user_metadata": metadata})
        token = f"token-{uid}"
        db[AUTH_SESSIONS].insert_one({"_id": token, "user_id": uid})
        user = {"id": uid, "email": email, "phone": phone, "user_metadata": metadata}
        return user, {"Authorization": f"Bearer {token}"}

    return _make
