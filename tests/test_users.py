from __future__ import annotations

import pytest

from errors import ConflictError, NotFoundError, PermissionDenied
from ratings import submit_rating
from schemas import Actor
from users import CreateUserRequest, UserOut, bootstrap_admin, create_user, delete_user, list_users, pwd_context


def _request(**overrides) -> CreateUserRequest:
    data = {"name": "Nina Newcomer", "email": "nina@example.com", "password": "Secret@123", "role": "owner"}
    data.update(overrides)
    return CreateUserRequest(**data)


def test_admin_creates_user_with_opaque_credential(store, admin):
    created = create_user(store, Actor.from_user(admin), _request())
    assert created.role == "owner"
    assert created.password_hash != "Secret@123"
    assert pwd_context.verify("Secret@123", created.password_hash)
    assert "password_hash" not in UserOut.from_user(created).model_dump()


def test_duplicate_email_conflicts(store, admin):
    create_user(store, Actor.from_user(admin), _request())
    with pytest.raises(ConflictError):
        create_user(store, Actor.from_user(admin), _request(name="Someone Else"))
    assert store.count_users() == 2


def test_only_admin_manages_users(store, rater):
    with pytest.raises(PermissionDenied):
        create_user(store, Actor.from_user(rater), _request())
    with pytest.raises(PermissionDenied):
        list_users(store, Actor.from_user(rater))


def test_list_users_filters(store, admin, owner, rater):
    assert [u.id for u in list_users(store, Actor.from_user(admin), role="owner")] == [owner.id]
    names = [u.name for u in list_users(store, Actor.from_user(admin), sort_by="name")]
    assert names == sorted(names)
    assert [u.id for u in list_users(store, Actor.from_user(admin), email="uma.")] == [rater.id]


def test_delete_user_cascades(store, admin, owner, rater, make_user, make_store):
    shop = make_store(owner)
    other_owner = make_user("Other Owner", "owner")
    elsewhere = make_store(other_owner, name="Elsewhere")
    second = make_user("Second Rater", "user")
    submit_rating(store, Actor.from_user(rater), shop.id, 1)
    submit_rating(store, Actor.from_user(rater), elsewhere.id, 1)
    submit_rating(store, Actor.from_user(second), elsewhere.id, 5)

    delete_user(store, Actor.from_user(admin), rater.id)
    assert store.find_user(rater.id) is None
    assert store.count_ratings() == 1
    assert store.find_store(elsewhere.id).aggregate_rating == 5.0
    assert store.find_store(shop.id).aggregate_rating is None

    delete_user(store, Actor.from_user(admin), other_owner.id)
    assert store.find_store(elsewhere.id) is None
    assert store.count_ratings() == 0


def test_delete_missing_user(store, admin):
    with pytest.raises(NotFoundError):
        delete_user(store, Actor.from_user(admin), "missing")


def test_bootstrap_admin_only_once(store):
    first = bootstrap_admin(store, "Root", "root@example.com", "Admin@123")
    assert first.role == "admin"
    with pytest.raises(ConflictError):
        bootstrap_admin(store, "Root Again", "root2@example.com", "Admin@123")
