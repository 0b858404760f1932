# backend/circles/api/deps/auth.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from circles.core.security import bearer_scheme, decode_access_token, optional_bearer_scheme
from circles.db.session import get_db
from circles.models.user import User


async def _load_active_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User inactive")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Dependency for endpoints that need a signed-in caller."""
    return await _load_active_user(db, decode_access_token(credentials.credentials))


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """
    Like get_current_user, but a request without credentials is anonymous
    (None) instead of 401. A token that is present but invalid is still 401.
    """
    if credentials is None:
        return None
    return await _load_active_user(db, decode_access_token(credentials.credentials))
