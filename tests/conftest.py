from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from database import get_store
from main import app
from memory_store import MemoryStore
from schemas import Store, User


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def make_user(store):
    def _make(name: str, role: str = "user") -> User:
        email = f"{name.lower().replace(' ', '.')}@example.com"
        return store.create_user(User(name=name, email=email, password_hash="opaque", role=role))

    return _make


@pytest.fixture()
def make_store(store):
    def _make(owner: User, name: str = "Corner Shop", address: str = "1 Main Street") -> Store:
        return store.create_store(Store(owner_id=owner.id, name=name, address=address))

    return _make


@pytest.fixture()
def admin(make_user) -> User:
    return make_user("Alice Admin", "admin")


@pytest.fixture()
def owner(make_user) -> User:
    return make_user("Oscar Owner", "owner")


@pytest.fixture()
def rater(make_user) -> User:
    return make_user("Uma User", "user")


@pytest.fixture()
def shop(make_store, owner) -> Store:
    return make_store(owner)


@pytest.fixture()
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
