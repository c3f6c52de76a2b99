"""
Shared fixtures: an in-memory MongoDB, a pinned clock and an API client.
"""

from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import ensure_indexes, get_db

# Wednesday; its Monday-start week runs 2025-01-13 .. 2025-01-19
FIXED_NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient()["habit_tracker_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def clock():
    """Mutable holder for the injected "now"; tests move it between days."""
    return {"now": FIXED_NOW}


@pytest.fixture
def client(mongo_db, clock):
    main.app.dependency_overrides[get_db] = lambda: mongo_db
    main.app.dependency_overrides[main.get_now] = lambda: clock["now"]
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def register(client, email="ada@example.com", password="secret123", name="Ada"):
    resp = client.post("/api/auth/register", json={"email": email, "password": password, "name": name})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def auth_headers(client):
    return register(client)


@pytest.fixture
def make_habit(client, auth_headers):
    def _make(name="Read", **fields):
        resp = client.post("/api/habits", json={"name": name, **fields}, headers=auth_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _make
