import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from realtime import manager


@pytest.fixture(autouse=True)
def fake_db(monkeypatch):
    fake = mongomock.MongoClient()["linkspark_test"]
    monkeypatch.setattr(database, "db", fake)
    database.ensure_indexes()
    manager.active.clear()
    yield fake
    manager.active.clear()
    main.app.dependency_overrides.clear()


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def signup(client):
    """Register an account and return its auth headers; leaves the client cookie-free."""

    def _signup(username="alice", email=None, password="secret123"):
        resp = client.post(
            "/auth/register",
            json={"email": email or f"{username}@mail.linkspark.io", "password": password, "username": username},
        )
        assert resp.status_code == 200, resp.text
        client.cookies.clear()
        return {"Authorization": f"Bearer {resp.json()['token']}"}

    return _signup
