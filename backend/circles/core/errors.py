# backend/circles/core/errors.py

from __future__ import annotations

DENIED = "DENIED"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
LAST_ADMIN = "LAST_ADMIN"
INVALID_STATE = "INVALID_STATE"


class CircleAccessError(Exception):
    """
    Base for every error the access engine raises.

    ``code`` is stable and machine-readable (it ends up in API error bodies);
    ``message`` is for humans.
    """

    code: str = "ERROR"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code.lower().replace("_", " ")
        super().__init__(self.message)


class DeniedError(CircleAccessError):
    code = DENIED


class ForbiddenError(DeniedError):
    # privilege guard: actor tried to grant/revoke at or above their own level
    code = FORBIDDEN


class NotFoundError(CircleAccessError):
    code = NOT_FOUND


class ConflictError(CircleAccessError):
    code = CONFLICT


class LastAdminError(ConflictError):
    code = LAST_ADMIN

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "last admin")


class InvalidStateError(CircleAccessError):
    code = INVALID_STATE
