# backend/circles/api/errors.py
from __future__ import annotations

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from circles.core import errors
from circles.core.membership import ActionResult

STATUS_BY_CODE = {
    errors.DENIED: status.HTTP_403_FORBIDDEN,
    errors.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    errors.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    errors.CONFLICT: status.HTTP_409_CONFLICT,
    errors.LAST_ADMIN: status.HTTP_409_CONFLICT,
    errors.INVALID_STATE: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def http_error(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(code, status.HTTP_400_BAD_REQUEST),
        detail={"error": code, "message": message},
    )


def raise_for_result(result: ActionResult) -> ActionResult:
    if not result.success:
        raise http_error(result.code or errors.CONFLICT, result.reason or "Request failed")
    return result


async def circle_access_error_handler(request: Request, exc: errors.CircleAccessError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content={"detail": {"error": exc.code, "message": exc.message}},
    )
