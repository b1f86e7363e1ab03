import logging
from typing import List, Optional

from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from database import PersistenceStore
from errors import ConflictError, NotFoundError
from policy import Action, require
from ratings import recompute_aggregate
from schemas import Actor, Role, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class CreateUserRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    email: EmailStr
    address: Optional[str] = Field(None, max_length=400)
    password: str = Field(..., min_length=8, max_length=128)
    role: Role = Role.USER


class UserOut(BaseModel):
    id: str
    name: str
    email: str
    address: Optional[str] = None
    role: str

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(**user.model_dump(exclude={"password_hash"}))


def _insert_user(store: PersistenceStore, payload: CreateUserRequest) -> User:
    if store.find_user_by_email(payload.email) is not None:
        raise ConflictError("Email already exists")
    user = User(
        name=payload.name,
        email=payload.email,
        address=payload.address,
        password_hash=pwd_context.hash(payload.password),
        role=payload.role,
    )
    return store.create_user(user)


def create_user(store: PersistenceStore, actor: Actor, payload: CreateUserRequest) -> User:
    require(actor, Action.MANAGE_USERS)
    created = _insert_user(store, payload)
    logger.info("admin %s created %s user %s", actor.id, created.role, created.id)
    return created


def list_users(
    store: PersistenceStore,
    actor: Actor,
    name: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    role: Optional[str] = None,
    sort_by: str = "name",
    order: str = "asc",
) -> List[User]:
    require(actor, Action.MANAGE_USERS)
    filters = {"name": name, "email": email, "address": address, "role": role}
    return store.list_users(filters, sort_by=sort_by, descending=order == "desc")


def delete_user(store: PersistenceStore, actor: Actor, user_id: str) -> None:
    """Remove a user and everything hanging off it.

    Ratings the user gave are deleted and the affected stores' aggregates
    recomputed; stores the user owns go away with their ratings.
    """
    require(actor, Action.MANAGE_USERS)
    if store.find_user(user_id) is None:
        raise NotFoundError("User not found")

    with store.transaction("user", user_id):
        rated = {r.store_id for r in store.ratings_for_user(user_id)}
        store.delete_ratings(user_id=user_id)
        owned = store.list_stores({}, owner_id=user_id)
        for s in owned:
            store.delete_ratings(store_id=s.id)
            store.delete_store(s.id)
            rated.discard(s.id)
        for store_id in rated:
            recompute_aggregate(store, store_id)
        store.delete_user(user_id)

    logger.info("admin %s deleted user %s (%d stores, %d rated stores)", actor.id, user_id, len(owned), len(rated))


def bootstrap_admin(store: PersistenceStore, name: str, email: str, password: str) -> User:
    """Create the first admin; refuses once any admin exists."""
    if store.list_users({"role": Role.ADMIN.value}):
        raise ConflictError("Admin already exists")
    admin = _insert_user(store, CreateUserRequest(name=name, email=email, password=password, role=Role.ADMIN))
    logger.info("bootstrapped admin %s", admin.id)
    return admin
