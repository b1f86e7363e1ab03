import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr

from database import PersistenceStore
from errors import NotFoundError, ValidationError
from policy import Action, require
from ratings import get_user_rating
from schemas import Actor, Store, StoreListing

logger = logging.getLogger(__name__)

NAME_MAX = 60
ADDRESS_MAX = 400
EDITABLE_FIELDS = ("name", "address", "email")


class CreateStoreRequest(BaseModel):
    name: str
    address: str
    email: Optional[EmailStr] = None


class UpdateStoreRequest(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    email: Optional[EmailStr] = None


def _clean_text(field: str, value: Optional[str], limit: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"Store {field} is required")
    if len(text) > limit:
        raise ValidationError(f"Store {field} must be at most {limit} characters")
    return text


def create_store(store: PersistenceStore, actor: Actor, payload: CreateStoreRequest) -> Store:
    require(actor, Action.CREATE_STORE)
    record = Store(
        owner_id=actor.id,
        name=_clean_text("name", payload.name, NAME_MAX),
        address=_clean_text("address", payload.address, ADDRESS_MAX),
        email=payload.email,
    )
    created = store.create_store(record)
    logger.info("owner %s created store %s", actor.id, created.id)
    return created


def _get_store(store: PersistenceStore, store_id: str) -> Store:
    found = store.find_store(store_id)
    if found is None:
        raise NotFoundError("Store not found")
    return found


def edit_store(store: PersistenceStore, actor: Actor, store_id: str, payload: UpdateStoreRequest) -> Store:
    existing = _get_store(store, store_id)
    require(actor, Action.EDIT_STORE, existing)

    changes: Dict[str, Any] = {}
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field not in EDITABLE_FIELDS:
            continue
        if field == "name":
            value = _clean_text("name", value, NAME_MAX)
        elif field == "address":
            value = _clean_text("address", value, ADDRESS_MAX)
        changes[field] = value
    if not changes:
        return existing

    updated = store.update_store(store_id, changes)
    if updated is None:
        raise NotFoundError("Store not found")
    logger.info("owner %s edited store %s: %s", actor.id, store_id, sorted(changes))
    return updated


def delete_store(store: PersistenceStore, actor: Actor, store_id: str) -> None:
    existing = _get_store(store, store_id)
    require(actor, Action.DELETE_STORE, existing)
    with store.transaction("store", store_id):
        removed = store.delete_ratings(store_id=store_id)
        store.delete_store(store_id)
    logger.info("owner %s deleted store %s (%d ratings removed)", actor.id, store_id, removed)


def list_stores(
    store: PersistenceStore,
    actor: Actor,
    name: Optional[str] = None,
    address: Optional[str] = None,
    sort_by: str = "name",
    order: str = "asc",
) -> List[StoreListing]:
    require(actor, Action.LIST_STORES)
    found = store.list_stores({"name": name, "address": address}, sort_by=sort_by, descending=order == "desc")
    return [
        StoreListing(**s.model_dump(), my_rating=get_user_rating(store, actor.id, s.id))
        for s in found
    ]
