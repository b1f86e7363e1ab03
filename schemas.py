"""Records and payloads of the ratings platform.

User, Store and Rating map onto the "user", "store" and "rating" collections.
A store keeps its aggregate_rating as a cached mean of its ratings; it is
rewritten by the rating service and is never the source of truth. Actor is the
{id, role} pair the request layer hands to the core, and the remaining models
are the admin and owner dashboard responses.
"""

from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, EmailStr


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"
    OWNER = "owner"


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=60)
    email: EmailStr
    address: Optional[str] = Field(None, max_length=400)
    password_hash: str = Field(..., description="Opaque password credential")
    role: Role = Field(Role.USER, validate_default=True)


class Store(BaseModel):
    id: Optional[str] = None
    owner_id: str = Field(..., description="Reference to user _id (owner)")
    name: str = Field(..., min_length=1, max_length=60)
    address: str = Field(..., min_length=1, max_length=400)
    email: Optional[EmailStr] = None
    aggregate_rating: Optional[float] = Field(None, ge=1, le=5, description="Derived mean of ratings")


class Rating(BaseModel):
    id: Optional[str] = None
    user_id: str = Field(...)
    store_id: str = Field(...)
    value: int = Field(..., ge=1, le=5)


class Actor(BaseModel):
    """Authenticated identity performing a request.

    The role is kept as a plain string so that values outside the known roles
    reach the policy and get denied there instead of failing validation.
    """

    id: str
    role: str

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        role = user.role.value if isinstance(user.role, Role) else user.role
        return cls(id=user.id, role=role)


class DashboardStats(BaseModel):
    total_users: int
    total_stores: int
    total_ratings: int


class RaterEntry(BaseModel):
    user_id: str
    user_name: str = ""
    user_email: str = ""
    value: int


class OwnerStoreSummary(BaseModel):
    store: Store
    aggregate_rating: Optional[float] = None
    ratings: List[RaterEntry] = Field(default_factory=list)


class StoreListing(Store):
    my_rating: Optional[int] = None
