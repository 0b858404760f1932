# backend/circles/schemas/auth.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr


class MeResponse(BaseModel):
    id: UUID
    email: EmailStr
    is_active: bool
    full_name: Optional[str] = None

    model_config = {"from_attributes": True}
