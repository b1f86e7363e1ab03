import logging
from typing import Optional

from database import PersistenceStore
from errors import NotFoundError, ValidationError
from policy import Action, require
from schemas import Actor, Rating

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


def validate_value(value) -> int:
    # bool is an int subclass; True must not count as a 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Rating must be an integer between {MIN_RATING} and {MAX_RATING}")
    if not MIN_RATING <= value <= MAX_RATING:
        raise ValidationError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
    return value


def recompute_aggregate(store: PersistenceStore, store_id: str) -> Optional[float]:
    """Store and return the mean of all ratings for ``store_id``.

    A store without ratings has no aggregate (``None``).
    """
    values = [r.value for r in store.ratings_for_store(store_id)]
    avg = round(sum(values) / len(values), 2) if values else None
    store.update_store_aggregate(store_id, avg)
    return avg


def submit_rating(store: PersistenceStore, actor: Actor, store_id: str, value) -> Rating:
    """Create or replace ``actor``'s rating of a store.

    The rating is keyed by (user, store): a second submission updates the
    existing record. The rating write and the aggregate recompute share one
    transaction, so either both are persisted or neither is.
    """
    require(actor, Action.SUBMIT_RATING)
    value = validate_value(value)

    with store.transaction("rating", actor.id, store_id):
        if store.find_store(store_id) is None:
            raise NotFoundError("Store not found")
        rating = store.create_or_update_rating(Rating(user_id=actor.id, store_id=store_id, value=value))
        avg = recompute_aggregate(store, store_id)

    logger.info("user %s rated store %s: %d (aggregate %s)", actor.id, store_id, value, avg)
    return rating


def get_user_rating(store: PersistenceStore, user_id: str, store_id: str) -> Optional[int]:
    rating = store.find_rating(user_id, store_id)
    return rating.value if rating else None
