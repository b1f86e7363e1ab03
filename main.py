import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dashboard import get_dashboard_stats, get_owner_dashboard
from database import PersistenceStore, get_store
from errors import (
    ConflictError,
    NotFoundError,
    PermissionDenied,
    RatingsError,
    StoreUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from ratings import submit_rating
from schemas import Actor, DashboardStats, OwnerStoreSummary, Rating, Store, StoreListing
from stores import CreateStoreRequest, UpdateStoreRequest, create_store, delete_store, edit_store, list_stores
from users import CreateUserRequest, UserOut, bootstrap_admin, create_user, delete_user, list_users

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
BOOTSTRAP_ADMIN_EMAIL = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@example.com")
BOOTSTRAP_ADMIN_PASSWORD = os.getenv("BOOTSTRAP_ADMIN_PASSWORD", "Admin@123")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    ValidationError: 422,
    UnauthorizedError: 401,
    NotFoundError: 404,
    PermissionDenied: 403,
    ConflictError: 409,
    StoreUnavailableError: 503,
}

# App and CORS
app = FastAPI(title="Ratings Platform API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RatingsError)
async def ratings_error_handler(request: Request, exc: RatingsError):
    status = next((code for cls, code in STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    ]
    body = ValidationError("; ".join(problems) or "Invalid request").to_dict()
    return JSONResponse(status_code=422, content=body)


# The authenticating gateway in front of this service sets X-User-Id.
def get_current_actor(
    x_user_id: Optional[str] = Header(None),
    store: PersistenceStore = Depends(get_store),
) -> Actor:
    if not x_user_id:
        raise UnauthorizedError("Missing actor identity")
    user = store.find_user(x_user_id)
    if user is None:
        raise UnauthorizedError("Unknown actor")
    return Actor.from_user(user)


# Request/Response Models
class RateStoreRequest(BaseModel):
    # range checked by the rating service so the error kind stays "validation"
    value: int = Field(..., strict=True)


class BootstrapRequest(BaseModel):
    name: str = Field("Default Administrator", min_length=1, max_length=60)


# Admin Routes
@app.get("/admin/dashboard", response_model=DashboardStats)
def admin_dashboard(actor: Actor = Depends(get_current_actor), store: PersistenceStore = Depends(get_store)):
    return get_dashboard_stats(store, actor)


@app.post("/admin/users", response_model=UserOut, status_code=201)
def admin_create_user(
    payload: CreateUserRequest,
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    return UserOut.from_user(create_user(store, actor, payload))


@app.get("/admin/users", response_model=List[UserOut])
def admin_list_users(
    name: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    role: Optional[str] = None,
    sort_by: str = Query("name"),
    order: str = Query("asc", pattern="^(asc|desc)$"),
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    users = list_users(store, actor, name=name, email=email, address=address, role=role, sort_by=sort_by, order=order)
    return [UserOut.from_user(u) for u in users]


@app.delete("/admin/users/{user_id}", status_code=204)
def admin_delete_user(
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    delete_user(store, actor, user_id)


# Stores and Ratings
@app.get("/stores", response_model=List[StoreListing])
def stores_index(
    name: Optional[str] = None,
    address: Optional[str] = None,
    sort_by: str = Query("name"),
    order: str = Query("asc", pattern="^(asc|desc)$"),
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    return list_stores(store, actor, name=name, address=address, sort_by=sort_by, order=order)


@app.post("/stores", response_model=Store, status_code=201)
def stores_create(
    payload: CreateStoreRequest,
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    return create_store(store, actor, payload)


@app.patch("/stores/{store_id}", response_model=Store)
def stores_update(
    store_id: str,
    payload: UpdateStoreRequest,
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    return edit_store(store, actor, store_id, payload)


@app.delete("/stores/{store_id}", status_code=204)
def stores_delete(
    store_id: str,
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    delete_store(store, actor, store_id)


@app.post("/stores/{store_id}/rating", response_model=Rating)
def rate_store(
    store_id: str,
    payload: RateStoreRequest,
    actor: Actor = Depends(get_current_actor),
    store: PersistenceStore = Depends(get_store),
):
    return submit_rating(store, actor, store_id, payload.value)


# Owner routes
@app.get("/owner/dashboard", response_model=List[OwnerStoreSummary])
def owner_dashboard(actor: Actor = Depends(get_current_actor), store: PersistenceStore = Depends(get_store)):
    return get_owner_dashboard(store, actor)


# Bootstrap route for demo
@app.post("/init/bootstrap", status_code=201)
def init_bootstrap(payload: Optional[BootstrapRequest] = None, store: PersistenceStore = Depends(get_store)):
    """Create a default admin if none exists (credentials from BOOTSTRAP_ADMIN_* env)."""
    name = payload.name if payload else "Default Administrator"
    admin = bootstrap_admin(store, name, BOOTSTRAP_ADMIN_EMAIL, BOOTSTRAP_ADMIN_PASSWORD)
    return {"message": "Admin created", "id": admin.id, "email": admin.email}


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Ratings Platform API running"}


@app.get("/health")
def health(store: PersistenceStore = Depends(get_store)):
    return {"backend": "ok", "database": "ok", "users": store.count_users()}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
