"""
Database access for the Rating Platform

The core talks to storage through the small ``PersistenceStore`` protocol.
``MongoStore`` implements it over pymongo; ``memory_store.MemoryStore`` keeps
everything in process for tests and local runs.

Environment:
- DATABASE_URL: MongoDB connection string (unset -> no database configured)
- DATABASE_NAME: database name (default "ratings")
- MONGO_TRANSACTIONS: "1" (default) runs multi-write operations in a
  multi-document transaction, which needs a replica set or mongos; a standalone
  server then fails every such write with a 503. "0" serializes them inside this
  process and undoes the writes already made when a later one fails.
"""

import logging
import os
import re
import threading
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, StoreUnavailableError
from schemas import Rating, Store, User

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ratings")
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "1") == "1"

USER_SORT_FIELDS = ("name", "email", "address", "role")
STORE_SORT_FIELDS = ("name", "address", "email", "aggregate_rating")

DUPLICATE_KEY = 11000
WRITE_CONFLICT = 112


class PersistenceStore(Protocol):
    """Storage operations consumed by the core services."""

    def find_user(self, user_id: str) -> Optional[User]: ...
    def find_user_by_email(self, email: str) -> Optional[User]: ...
    def create_user(self, user: User) -> User: ...
    def list_users(self, filters: Dict[str, str], sort_by: str = "name", descending: bool = False) -> List[User]: ...
    def delete_user(self, user_id: str) -> bool: ...

    def find_store(self, store_id: str) -> Optional[Store]: ...
    def create_store(self, store: Store) -> Store: ...
    def update_store(self, store_id: str, changes: Dict[str, Any]) -> Optional[Store]: ...
    def delete_store(self, store_id: str) -> bool: ...
    def list_stores(self, filters: Dict[str, str], owner_id: Optional[str] = None,
                    sort_by: str = "name", descending: bool = False) -> List[Store]: ...
    def update_store_aggregate(self, store_id: str, value: Optional[float]) -> None: ...

    def find_rating(self, user_id: str, store_id: str) -> Optional[Rating]: ...
    def create_or_update_rating(self, rating: Rating) -> Rating: ...
    def ratings_for_store(self, store_id: str) -> List[Rating]: ...
    def ratings_for_user(self, user_id: str) -> List[Rating]: ...
    def delete_ratings(self, user_id: Optional[str] = None, store_id: Optional[str] = None) -> int: ...

    def count_users(self) -> int: ...
    def count_stores(self) -> int: ...
    def count_ratings(self) -> int: ...

    def transaction(self, *key: str): ...


def new_id() -> str:
    return str(ObjectId())


def to_obj_id(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def regex_filters(filters: Dict[str, str]) -> Dict[str, Any]:
    q: Dict[str, Any] = {}
    for field, value in filters.items():
        if not value:
            continue
        if field == "role":
            q["role"] = value
        else:
            q[field] = {"$regex": re.escape(value), "$options": "i"}
    return q


def is_conflict(exc: PyMongoError) -> bool:
    """Duplicate keys and aborted concurrent transactions are both write races."""
    if isinstance(exc, DuplicateKeyError):
        return True
    if getattr(exc, "code", None) in (DUPLICATE_KEY, WRITE_CONFLICT):
        return True
    return exc.has_error_label("TransientTransactionError")


def translate(exc: PyMongoError, where: str) -> Exception:
    if is_conflict(exc):
        logger.warning("write conflict in %s: %s", where, exc)
        return ConflictError("Conflicting write, please retry")
    logger.error("database failure in %s: %s", where, exc)
    return StoreUnavailableError("Database unavailable")


def guarded(method):
    """Translate pymongo failures into the platform's error taxonomy."""

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except PyMongoError as exc:
            raise translate(exc, method.__name__) from exc

    return wrapper


class MongoStore:
    def __init__(self, db, use_transactions: bool = True):
        self.db = db
        self.use_transactions = use_transactions
        self._local = threading.local()
        # serializes non-transactional multi-write operations in this process
        self._write_lock = threading.RLock()

    @guarded
    def ensure_indexes(self) -> None:
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["store"].create_index([("owner_id", ASCENDING)])
        self.db["rating"].create_index([("user_id", ASCENDING), ("store_id", ASCENDING)], unique=True)
        self.db["rating"].create_index([("store_id", ASCENDING)])

    @contextmanager
    def transaction(self, *key: str) -> Iterator[None]:
        if self._session() is not None or self._undo_log() is not None:
            yield
            return
        if self.use_transactions:
            with self._server_transaction(key):
                yield
        else:
            with self._undoable(key):
                yield

    @contextmanager
    def _server_transaction(self, key) -> Iterator[None]:
        try:
            session = self.db.client.start_session()
        except PyMongoError as exc:
            raise translate(exc, "start_session") from exc
        try:
            with session.start_transaction():
                self._local.session = session
                try:
                    yield
                finally:
                    self._local.session = None
        except PyMongoError as exc:
            raise translate(exc, f"transaction {key}") from exc
        finally:
            session.end_session()

    @contextmanager
    def _undoable(self, key) -> Iterator[None]:
        with self._write_lock:
            self._local.undo = []
            try:
                yield
            except Exception:
                self._rollback(key)
                raise
            finally:
                self._local.undo = None

    def _rollback(self, key) -> None:
        undo = self._local.undo or []
        for step in reversed(undo):
            try:
                step()
            except PyMongoError:
                logger.exception("could not undo a write of transaction %s; data may be inconsistent", key)
                return
        logger.info("rolled back %d writes of transaction %s", len(undo), key)

    def _session(self):
        return getattr(self._local, "session", None)

    def _undo_log(self) -> Optional[List[Callable[[], Any]]]:
        return getattr(self._local, "undo", None)

    def _on_undo(self, step: Callable[[], Any]) -> None:
        undo = self._undo_log()
        if undo is not None:
            undo.append(step)

    def _kw(self) -> Dict[str, Any]:
        session = self._session()
        return {"session": session} if session is not None else {}

    def _restore(self, collection: str, docs: List[Dict]) -> Callable[[], Any]:
        return lambda: self.db[collection].insert_many(docs) if docs else None

    # Users

    @guarded
    def find_user(self, user_id: str) -> Optional[User]:
        oid = to_obj_id(user_id)
        if oid is None:
            return None
        doc = self.db["user"].find_one({"_id": oid}, **self._kw())
        return User(**sanitize(doc)) if doc else None

    @guarded
    def find_user_by_email(self, email: str) -> Optional[User]:
        doc = self.db["user"].find_one({"email": email}, **self._kw())
        return User(**sanitize(doc)) if doc else None

    @guarded
    def create_user(self, user: User) -> User:
        doc = user.model_dump(exclude={"id"})
        res = self.db["user"].insert_one(doc, **self._kw())
        self._on_undo(lambda: self.db["user"].delete_one({"_id": res.inserted_id}))
        return user.model_copy(update={"id": str(res.inserted_id)})

    @guarded
    def list_users(self, filters: Dict[str, str], sort_by: str = "name", descending: bool = False) -> List[User]:
        if sort_by not in USER_SORT_FIELDS:
            sort_by = "name"
        cursor = self.db["user"].find(regex_filters(filters), **self._kw())
        cursor = cursor.sort([(sort_by, DESCENDING if descending else ASCENDING)])
        return [User(**sanitize(u)) for u in cursor]

    @guarded
    def delete_user(self, user_id: str) -> bool:
        oid = to_obj_id(user_id)
        if oid is None:
            return False
        doc = self.db["user"].find_one_and_delete({"_id": oid}, **self._kw())
        if doc is not None:
            self._on_undo(self._restore("user", [doc]))
        return doc is not None

    # Stores

    @guarded
    def find_store(self, store_id: str) -> Optional[Store]:
        oid = to_obj_id(store_id)
        if oid is None:
            return None
        doc = self.db["store"].find_one({"_id": oid}, **self._kw())
        return Store(**sanitize(doc)) if doc else None

    @guarded
    def create_store(self, store: Store) -> Store:
        doc = store.model_dump(exclude={"id"})
        res = self.db["store"].insert_one(doc, **self._kw())
        self._on_undo(lambda: self.db["store"].delete_one({"_id": res.inserted_id}))
        return store.model_copy(update={"id": str(res.inserted_id)})

    @guarded
    def update_store(self, store_id: str, changes: Dict[str, Any]) -> Optional[Store]:
        oid = to_obj_id(store_id)
        if oid is None:
            return None
        before = self.db["store"].find_one_and_update({"_id": oid}, {"$set": changes}, **self._kw())
        if before is None:
            return None
        previous = {field: before.get(field) for field in changes}
        self._on_undo(lambda: self.db["store"].update_one({"_id": oid}, {"$set": previous}))
        return Store(**sanitize({**before, **changes}))

    @guarded
    def delete_store(self, store_id: str) -> bool:
        oid = to_obj_id(store_id)
        if oid is None:
            return False
        doc = self.db["store"].find_one_and_delete({"_id": oid}, **self._kw())
        if doc is not None:
            self._on_undo(self._restore("store", [doc]))
        return doc is not None

    @guarded
    def list_stores(self, filters: Dict[str, str], owner_id: Optional[str] = None,
                    sort_by: str = "name", descending: bool = False) -> List[Store]:
        if sort_by not in STORE_SORT_FIELDS:
            sort_by = "name"
        q = regex_filters(filters)
        if owner_id is not None:
            q["owner_id"] = owner_id
        cursor = self.db["store"].find(q, **self._kw()).sort([(sort_by, DESCENDING if descending else ASCENDING)])
        return [Store(**sanitize(s)) for s in cursor]

    @guarded
    def update_store_aggregate(self, store_id: str, value: Optional[float]) -> None:
        oid = to_obj_id(store_id)
        if oid is None:
            return
        before = self.db["store"].find_one({"_id": oid}, {"aggregate_rating": 1}, **self._kw())
        self.db["store"].update_one({"_id": oid}, {"$set": {"aggregate_rating": value}}, **self._kw())
        if before is not None:
            previous = before.get("aggregate_rating")
            self._on_undo(lambda: self.db["store"].update_one({"_id": oid}, {"$set": {"aggregate_rating": previous}}))

    # Ratings

    @guarded
    def find_rating(self, user_id: str, store_id: str) -> Optional[Rating]:
        doc = self.db["rating"].find_one({"user_id": user_id, "store_id": store_id}, **self._kw())
        return Rating(**sanitize(doc)) if doc else None

    @guarded
    def create_or_update_rating(self, rating: Rating) -> Rating:
        before = self.db["rating"].find_one_and_update(
            {"user_id": rating.user_id, "store_id": rating.store_id},
            {"$set": {"value": rating.value}},
            upsert=True,
            return_document=ReturnDocument.BEFORE,
            **self._kw(),
        )
        doc = self.db["rating"].find_one({"user_id": rating.user_id, "store_id": rating.store_id}, **self._kw())
        if before is None:
            self._on_undo(lambda: self.db["rating"].delete_one({"_id": doc["_id"]}))
        else:
            self._on_undo(lambda: self.db["rating"].update_one({"_id": before["_id"]}, {"$set": {"value": before["value"]}}))
        return Rating(**sanitize(doc))

    @guarded
    def ratings_for_store(self, store_id: str) -> List[Rating]:
        return [Rating(**sanitize(r)) for r in self.db["rating"].find({"store_id": store_id}, **self._kw())]

    @guarded
    def ratings_for_user(self, user_id: str) -> List[Rating]:
        return [Rating(**sanitize(r)) for r in self.db["rating"].find({"user_id": user_id}, **self._kw())]

    @guarded
    def delete_ratings(self, user_id: Optional[str] = None, store_id: Optional[str] = None) -> int:
        q: Dict[str, Any] = {}
        if user_id is not None:
            q["user_id"] = user_id
        if store_id is not None:
            q["store_id"] = store_id
        if not q:
            return 0
        doomed = list(self.db["rating"].find(q, **self._kw())) if self._undo_log() is not None else []
        deleted = self.db["rating"].delete_many(q, **self._kw()).deleted_count
        self._on_undo(self._restore("rating", doomed))
        return deleted

    # Counts

    @guarded
    def count_users(self) -> int:
        return self.db["user"].count_documents({})

    @guarded
    def count_stores(self) -> int:
        return self.db["store"].count_documents({})

    @guarded
    def count_ratings(self) -> int:
        return self.db["rating"].count_documents({})


client: Optional[MongoClient] = None
db = None
_store: Optional[MongoStore] = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_store() -> PersistenceStore:
    """FastAPI dependency returning the configured store."""
    global _store
    if db is None:
        raise StoreUnavailableError("Database not configured")
    if _store is None:
        _store = MongoStore(db, use_transactions=MONGO_TRANSACTIONS)
        _store.ensure_indexes()
        logger.info("connected to database %s (transactions %s)", DATABASE_NAME,
                    "on" if MONGO_TRANSACTIONS else "off")
    return _store
