"""Shared pytest fixtures for the test suite.

Fixture overview
----------------
mongo         : in-memory mongomock database patched in as ``database.db``
client        : FastAPI TestClient bound to that database
make_user     : factory, registers + logs in a user, returns id/token/headers
seller, buyer : one ready-made account of each role
"""

from __future__ import annotations

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
import security


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient()["marketplace_test"]
    monkeypatch.setattr(database, "db", mock_db)
    # Keep password hashing cheap in tests
    monkeypatch.setattr(security, "PBKDF2_ITERATIONS", 1000)
    return mock_db


@pytest.fixture
def client(mongo):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(client):
    def _make(username: str, role: str, password: str = "secret1", email: str | None = None) -> dict:
        email = email or f"{username}@example.com"
        resp = client.post("/api/auth/register", json={
            "email": email, "username": username, "password": password, "role": role,
        })
        assert resp.status_code == 201, resp.text
        login = client.post("/api/auth/login", json={"username": username, "password": password})
        assert login.status_code == 200, login.text
        token = login.json()["token"]
        return {
            "id": resp.json()["user_id"],
            "username": username,
            "email": email,
            "role": role,
            "token": token,
            "headers": {"Authorization": f"Bearer {token}"},
        }
    return _make


@pytest.fixture
def seller(make_user) -> dict:
    return make_user("greenco", "seller")


@pytest.fixture
def buyer(make_user) -> dict:
    return make_user("recyclr", "buyer")


@pytest.fixture
def listed_product(client, seller) -> dict:
    """A product listed by ``seller``: 10 units of PET bottles."""
    resp = client.post("/api/products", headers=seller["headers"], json={
        "name": "PET bottles", "price": 12.5, "quantity": 10,
        "weight": "5kg", "material_type": "Plastic",
    })
    assert resp.status_code == 201, resp.text
    return {"id": resp.json()["product_id"], "seller": seller}
