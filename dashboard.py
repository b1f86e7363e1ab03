import logging
from typing import List

from database import PersistenceStore
from policy import Action, require
from schemas import Actor, DashboardStats, OwnerStoreSummary, RaterEntry

logger = logging.getLogger(__name__)


def get_dashboard_stats(store: PersistenceStore, actor: Actor) -> DashboardStats:
    # counts are taken independently; a concurrent write may land between them
    require(actor, Action.VIEW_DASHBOARD)
    return DashboardStats(
        total_users=store.count_users(),
        total_stores=store.count_stores(),
        total_ratings=store.count_ratings(),
    )


def get_owner_dashboard(store: PersistenceStore, actor: Actor) -> List[OwnerStoreSummary]:
    require(actor, Action.VIEW_OWNER_DASHBOARD)
    result = []
    for s in store.list_stores({}, owner_id=actor.id):
        raters = []
        for r in store.ratings_for_store(s.id):
            user = store.find_user(r.user_id)
            raters.append(RaterEntry(
                user_id=r.user_id,
                user_name=user.name if user else "",
                user_email=user.email if user else "",
                value=r.value,
            ))
        result.append(OwnerStoreSummary(store=s, aggregate_rating=s.aggregate_rating, ratings=raters))
    return result
