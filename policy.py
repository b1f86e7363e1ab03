import logging
from enum import Enum
from typing import Any, NamedTuple, Optional

from errors import PermissionDenied
from schemas import Role

logger = logging.getLogger(__name__)

INSUFFICIENT_ROLE = "insufficient role"
NOT_RESOURCE_OWNER = "not resource owner"


class Action(str, Enum):
    VIEW_DASHBOARD = "view_dashboard"
    CREATE_STORE = "create_store"
    EDIT_STORE = "edit_store"
    DELETE_STORE = "delete_store"
    SUBMIT_RATING = "submit_rating"
    VIEW_OWNER_DASHBOARD = "view_owner_dashboard"
    MANAGE_USERS = "manage_users"
    LIST_STORES = "list_stores"


class Decision(NamedTuple):
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)

# (action, allowed roles, ownership check); first match wins
RULES = (
    (Action.VIEW_DASHBOARD, {Role.ADMIN}, None),
    (Action.CREATE_STORE, {Role.OWNER}, "if_present"),
    (Action.EDIT_STORE, {Role.OWNER}, "required"),
    (Action.DELETE_STORE, {Role.OWNER}, "required"),
    (Action.SUBMIT_RATING, {Role.USER}, None),
    (Action.VIEW_OWNER_DASHBOARD, {Role.OWNER}, None),
    (Action.MANAGE_USERS, {Role.ADMIN}, None),
    (Action.LIST_STORES, {Role.ADMIN, Role.USER, Role.OWNER}, None),
)


def _coerce_role(role: Any) -> Optional[Role]:
    try:
        return Role(role)
    except ValueError:
        return None


def _coerce_action(action: Any) -> Optional[Action]:
    try:
        return Action(action)
    except ValueError:
        return None


def _owner_of(resource: Any) -> Optional[str]:
    if resource is None:
        return None
    if isinstance(resource, dict):
        return resource.get("owner_id")
    return getattr(resource, "owner_id", None)


def authorize(actor, action, resource: Any = None) -> Decision:
    """Decide whether ``actor`` may perform ``action`` on ``resource``.

    ``actor`` needs ``id`` and ``role`` attributes. ``resource`` may be a model
    or a dict; only its ``owner_id`` is consulted. No side effects.
    """
    role = _coerce_role(getattr(actor, "role", None))
    act = _coerce_action(action)
    if role is None or act is None:
        return Decision(False, INSUFFICIENT_ROLE)

    for rule_action, roles, ownership in RULES:
        if rule_action != act:
            continue
        if role not in roles:
            return Decision(False, INSUFFICIENT_ROLE)
        owner_id = _owner_of(resource)
        if ownership == "required" and (owner_id is None or owner_id != actor.id):
            return Decision(False, NOT_RESOURCE_OWNER)
        if ownership == "if_present" and owner_id is not None and owner_id != actor.id:
            return Decision(False, NOT_RESOURCE_OWNER)
        return ALLOW
    return Decision(False, INSUFFICIENT_ROLE)


def require(actor, action, resource: Any = None) -> None:
    decision = authorize(actor, action, resource)
    if not decision.allowed:
        name = action.value if isinstance(action, Action) else str(action)
        logger.info(
            "denied %s for actor %s (role=%s): %s",
            name, getattr(actor, "id", None), getattr(actor, "role", None), decision.reason,
        )
        raise PermissionDenied(f"Cannot {name.replace('_', ' ')}: {decision.reason}", reason=decision.reason)
