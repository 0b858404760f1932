from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID
import re

from pydantic import BaseModel, Field, field_validator

from circles.core.features import MODULES


HANDLE_REGEX = re.compile(r"^[a-z0-9][a-z0-9_-]{1,62}$")
CIRCLE_TYPES = {"circle", "project", "user"}


class CircleCreate(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    handle: str = Field(min_length=2, max_length=63)
    circle_type: str = Field(default="circle")
    is_public: bool = False
    enabled_modules: Optional[List[str]] = Field(
        default=None,
        description="Optional: modules to enable. Defaults to every module.",
    )

    @field_validator("handle")
    @classmethod
    def validate_handle(cls, v: str) -> str:
        v = v.strip().lower()
        if not HANDLE_REGEX.match(v):
            raise ValueError("handle must be lowercase letters, digits, '-' or '_'")
        return v

    @field_validator("circle_type")
    @classmethod
    def validate_circle_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in CIRCLE_TYPES:
            raise ValueError(f"circle_type must be one of {sorted(CIRCLE_TYPES)}")
        return v

    @field_validator("enabled_modules")
    @classmethod
    def validate_modules(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return None
        v = [m.strip().lower() for m in v]
        unknown = sorted(set(v) - set(MODULES))
        if unknown:
            raise ValueError(f"Unknown modules: {unknown}")
        return v


class RoleOut(BaseModel):
    handle: str
    display_name: str
    access_level: int
    read_only: bool
    description: Optional[str] = None

    model_config = {"from_attributes": True}


class CircleOut(BaseModel):
    id: UUID
    handle: Optional[str] = None
    name: Optional[str] = None
    circle_type: str
    is_public: bool
    owner_user_id: Optional[UUID] = None
    roles: List[RoleOut]
    enabled_modules: List[str]
    access_rules: Dict[str, Dict[str, List[str]]]

    # caller-relative; empty for anonymous callers
    membership_state: Optional[str] = None
    my_roles: List[str] = Field(default_factory=list)


class AuthorizationOut(BaseModel):
    circle_id: UUID
    feature: str
    authorized: bool


class AccessLevelOut(BaseModel):
    circle_id: UUID
    user_id: UUID
    access_level: Optional[int] = None


class MemberOut(BaseModel):
    user_id: UUID
    roles: List[str]
    access_level: Optional[int] = None
    joined_at: Optional[datetime] = None
