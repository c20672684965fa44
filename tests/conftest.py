"""
Shared fixtures.

The app binds its database handle at import time, so the Mongo client is
swapped for mongomock before anything from the project is imported.
Mongomock has no sessions, hence DATABASE_TRANSACTIONS=false.
"""
import os

os.environ.setdefault("DATABASE_URL", "mongodb://localhost:27017")
os.environ.setdefault("DATABASE_NAME", "ledger_test")
os.environ["DATABASE_TRANSACTIONS"] = "false"

import mongomock
import pymongo

pymongo.MongoClient = mongomock.MongoClient

import pytest
from fastapi.testclient import TestClient

import database
from main import app


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield database.db


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def register(client: TestClient, email: str = "owner@example.com") -> dict:
    r = client.post("/auth/register", json={"email": email, "name": "Owner", "password": "secret123"})
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def user(client: TestClient) -> dict:
    return register(client)


@pytest.fixture
def headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture
def owner_id(user: dict) -> str:
    return user["user"]["id"]


def bill_payload(**overrides) -> dict:
    payload = {
        "partyName": "Acme Corp",
        "date": "2024-01-15",
        "rows": [{"id": 1, "particulars": "Letterheads", "type": "Pad", "size": "1/4", "quantity": 10, "rate": 10}],
        "advance": 0,
        "previousBalance": 0,
        "status": "pending",
    }
    payload.update(overrides)
    return payload
