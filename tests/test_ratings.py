from __future__ import annotations

import threading

import pytest

from errors import NotFoundError, PermissionDenied, ValidationError
from ratings import get_user_rating, recompute_aggregate, submit_rating
from schemas import Actor


@pytest.mark.parametrize("value", [0, 6, -1, 100, 3.5, "4", True, None])
def test_invalid_values_are_rejected_without_writes(store, rater, shop, value):
    with pytest.raises(ValidationError):
        submit_rating(store, Actor.from_user(rater), shop.id, value)
    assert store.count_ratings() == 0
    assert store.find_store(shop.id).aggregate_rating is None


@pytest.mark.parametrize("value", [1, 5])
def test_boundaries_are_accepted(store, rater, shop, value):
    rating = submit_rating(store, Actor.from_user(rater), shop.id, value)
    assert rating.value == value


def test_resubmission_updates_in_place(store, rater, shop):
    first = submit_rating(store, Actor.from_user(rater), shop.id, 3)
    second = submit_rating(store, Actor.from_user(rater), shop.id, 5)

    assert first.id == second.id
    assert store.count_ratings() == 1
    assert store.find_rating(rater.id, shop.id).value == 5
    assert store.find_store(shop.id).aggregate_rating == 5.0


def test_aggregate_follows_all_ratings(store, rater, shop, make_user):
    other = make_user("Second Rater", "user")
    assert store.find_store(shop.id).aggregate_rating is None

    submit_rating(store, Actor.from_user(rater), shop.id, 4)
    assert store.find_store(shop.id).aggregate_rating == 4.0

    submit_rating(store, Actor.from_user(other), shop.id, 2)
    assert store.find_store(shop.id).aggregate_rating == 3.0


def test_aggregate_is_rounded(store, shop, make_user):
    for i, value in enumerate((5, 4, 4)):
        submit_rating(store, Actor.from_user(make_user(f"Rater {i}", "user")), shop.id, value)
    assert store.find_store(shop.id).aggregate_rating == 4.33


def test_unknown_store(store, rater):
    with pytest.raises(NotFoundError):
        submit_rating(store, Actor.from_user(rater), "000000000000000000000000", 3)
    assert store.count_ratings() == 0


@pytest.mark.parametrize("role", ["admin", "owner"])
def test_only_users_rate(store, shop, make_user, role):
    someone = make_user(f"Not A {role}", role)
    with pytest.raises(PermissionDenied):
        submit_rating(store, Actor.from_user(someone), shop.id, 4)
    assert store.count_ratings() == 0


def test_failed_aggregate_rolls_back_rating(store, rater, shop, monkeypatch):
    def boom(store_id, value):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "update_store_aggregate", boom)
    with pytest.raises(RuntimeError):
        submit_rating(store, Actor.from_user(rater), shop.id, 4)
    assert store.count_ratings() == 0


def test_concurrent_submissions_keep_one_row(store, rater, shop):
    errors = []

    def worker(value):
        try:
            submit_rating(store, Actor.from_user(rater), shop.id, value)
        except Exception as exc:  # noqa: BLE001 - collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(1 + i % 5,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert store.count_ratings() == 1
    final = store.find_rating(rater.id, shop.id).value
    assert store.find_store(shop.id).aggregate_rating == float(final)


def test_recompute_after_manual_delete(store, rater, shop):
    submit_rating(store, Actor.from_user(rater), shop.id, 2)
    store.delete_ratings(store_id=shop.id)
    assert recompute_aggregate(store, shop.id) is None
    assert store.find_store(shop.id).aggregate_rating is None


def test_get_user_rating(store, rater, owner, make_store):
    shop = make_store(owner, name="Bakery")
    assert get_user_rating(store, rater.id, shop.id) is None
    submit_rating(store, Actor.from_user(rater), shop.id, 4)
    assert get_user_rating(store, rater.id, shop.id) == 4
