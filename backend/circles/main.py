# backend/circles/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from circles.core.config import settings
from circles.core.errors import CircleAccessError
from circles.core.logging_config import configure_logging
import circles.models  # noqa: F401  # force model registration

from circles.api.errors import circle_access_error_handler
from circles.api.v1.auth import router as auth_router
from circles.api.v1.circles import router as circles_router
from circles.api.v1.membership import router as membership_router
from circles.api.v1.circle_settings import router as settings_router


def create_application() -> FastAPI:
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    app = FastAPI(title="Circles API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CircleAccessError, circle_access_error_handler)

    @app.get("/")
    def root():
        return {"status": "ok", "service": "circles"}

    # Routers
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(circles_router, prefix="/api/v1")
    app.include_router(membership_router, prefix="/api/v1")
    app.include_router(settings_router, prefix="/api/v1")

    return app


app = create_application()
