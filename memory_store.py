"""In-process implementation of ``database.PersistenceStore``.

Used by the test-suite and for running the API without MongoDB. Records are
kept as pydantic models in dicts keyed by id; every read returns a copy so
callers cannot mutate stored state behind the store's back.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from database import STORE_SORT_FIELDS, USER_SORT_FIELDS, new_id
from errors import ConflictError
from schemas import Rating, Store, User

logger = logging.getLogger(__name__)


def _matches(record, filters: Dict[str, str]) -> bool:
    for field, value in filters.items():
        if not value:
            continue
        current = getattr(record, field, None)
        if field == "role":
            if current != value:
                return False
        elif current is None or value.lower() not in str(current).lower():
            return False
    return True


def _sort_key(sort_by: str):
    def key(record):
        value = getattr(record, sort_by)
        return (value is None, value if value is not None else "")
    return key


def _sorted(records, sort_by: str, descending: bool):
    return sorted(records, key=_sort_key(sort_by), reverse=descending)


class MemoryStore:
    def __init__(self):
        self.users: Dict[str, User] = {}
        self.stores: Dict[str, Store] = {}
        self.ratings: Dict[str, Rating] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self, *key: str) -> Iterator[None]:
        with self._lock:
            self._depth += 1
            snapshot = None
            if self._depth == 1:
                snapshot = copy.deepcopy((self.users, self.stores, self.ratings))
            try:
                yield
            except Exception:
                if snapshot is not None:
                    self.users, self.stores, self.ratings = snapshot
                    logger.debug("rolled back transaction %s", key)
                raise
            finally:
                self._depth -= 1

    # Users

    def find_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            return user.model_copy() if user else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            for user in self.users.values():
                if user.email == email:
                    return user.model_copy()
        return None

    def create_user(self, user: User) -> User:
        with self._lock:
            if self.find_user_by_email(user.email) is not None:
                raise ConflictError("Email already exists")
            stored = user.model_copy(update={"id": new_id()})
            self.users[stored.id] = stored
            return stored.model_copy()

    def list_users(self, filters: Dict[str, str], sort_by: str = "name", descending: bool = False) -> List[User]:
        if sort_by not in USER_SORT_FIELDS:
            sort_by = "name"
        with self._lock:
            found = [u.model_copy() for u in self.users.values() if _matches(u, filters)]
        return _sorted(found, sort_by, descending)

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            return self.users.pop(user_id, None) is not None

    # Stores

    def find_store(self, store_id: str) -> Optional[Store]:
        with self._lock:
            store = self.stores.get(store_id)
            return store.model_copy() if store else None

    def create_store(self, store: Store) -> Store:
        with self._lock:
            stored = store.model_copy(update={"id": new_id()})
            self.stores[stored.id] = stored
            return stored.model_copy()

    def update_store(self, store_id: str, changes: Dict[str, Any]) -> Optional[Store]:
        with self._lock:
            store = self.stores.get(store_id)
            if store is None:
                return None
            updated = store.model_copy(update=changes)
            self.stores[store_id] = updated
            return updated.model_copy()

    def delete_store(self, store_id: str) -> bool:
        with self._lock:
            return self.stores.pop(store_id, None) is not None

    def list_stores(self, filters: Dict[str, str], owner_id: Optional[str] = None,
                    sort_by: str = "name", descending: bool = False) -> List[Store]:
        if sort_by not in STORE_SORT_FIELDS:
            sort_by = "name"
        with self._lock:
            found = [
                s.model_copy() for s in self.stores.values()
                if _matches(s, filters) and (owner_id is None or s.owner_id == owner_id)
            ]
        return _sorted(found, sort_by, descending)

    def update_store_aggregate(self, store_id: str, value: Optional[float]) -> None:
        with self._lock:
            store = self.stores.get(store_id)
            if store is not None:
                self.stores[store_id] = store.model_copy(update={"aggregate_rating": value})

    # Ratings

    def find_rating(self, user_id: str, store_id: str) -> Optional[Rating]:
        with self._lock:
            for rating in self.ratings.values():
                if rating.user_id == user_id and rating.store_id == store_id:
                    return rating.model_copy()
        return None

    def create_or_update_rating(self, rating: Rating) -> Rating:
        with self._lock:
            existing = self.find_rating(rating.user_id, rating.store_id)
            if existing is not None:
                stored = existing.model_copy(update={"value": rating.value})
            else:
                stored = rating.model_copy(update={"id": new_id()})
            self.ratings[stored.id] = stored
            return stored.model_copy()

    def ratings_for_store(self, store_id: str) -> List[Rating]:
        with self._lock:
            return [r.model_copy() for r in self.ratings.values() if r.store_id == store_id]

    def ratings_for_user(self, user_id: str) -> List[Rating]:
        with self._lock:
            return [r.model_copy() for r in self.ratings.values() if r.user_id == user_id]

    def delete_ratings(self, user_id: Optional[str] = None, store_id: Optional[str] = None) -> int:
        if user_id is None and store_id is None:
            return 0
        with self._lock:
            doomed = [
                rid for rid, r in self.ratings.items()
                if (user_id is None or r.user_id == user_id) and (store_id is None or r.store_id == store_id)
            ]
            for rid in doomed:
                del self.ratings[rid]
            return len(doomed)

    # Counts

    def count_users(self) -> int:
        with self._lock:
            return len(self.users)

    def count_stores(self) -> int:
        with self._lock:
            return len(self.stores)

    def count_ratings(self) -> int:
        with self._lock:
            return len(self.ratings)
