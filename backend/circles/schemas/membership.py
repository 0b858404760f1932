from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class MembershipRequestIn(BaseModel):
    answers: Optional[Dict[str, str]] = Field(
        default=None,
        description="Optional: answers to the circle's join questionnaire.",
    )


class MembershipResultOut(BaseModel):
    success: bool
    state: Optional[str] = None
    reason: Optional[str] = None
    roles: Optional[List[str]] = None


class MembershipRequestOut(BaseModel):
    id: UUID
    user_id: UUID
    status: str
    questionnaire_answers: Optional[Dict[str, str]] = None
    requested_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MembershipRequestList(BaseModel):
    pending: List[MembershipRequestOut]
    rejected: List[MembershipRequestOut]


class MemberRolesUpdate(BaseModel):
    roles: List[str] = Field(min_length=1)

    @field_validator("roles")
    @classmethod
    def normalize_roles(cls, v: List[str]) -> List[str]:
        return sorted({r.strip().lower() for r in v if r and r.strip()})
