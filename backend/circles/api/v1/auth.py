# backend/circles/api/v1/auth.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from circles.api.deps.auth import get_current_user
from circles.models.user import User
from circles.schemas.auth import MeResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=MeResponse)
async def me(user: User = Depends(get_current_user)) -> MeResponse:
    """Identity behind the bearer token. Tokens are issued upstream."""
    return MeResponse.model_validate(user)
