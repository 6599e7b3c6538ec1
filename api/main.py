"""
Main FastAPI application.

Identity & access API with:
- Registration, login and MFA challenges
- Credential refresh, logout and session management
- Security history for the principal
- Admin control plane (principals, MFA policy, audit)
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.account_api import router as account_router
from api.admin_api import router as admin_router
from api.auth_api import router as auth_router
from api.dependencies import Services
from api.responses import failure, ok
from auth.errors import AuthError, ErrorKind, RateLimitExceeded
from config.settings import Settings, configure_logging

logger = logging.getLogger(__name__)

# Details safe to show in production
PUBLIC_DETAILS = ("retry_after", "attempts_remaining", "lockout_behavior", "reasons")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (read from the environment if omitted)
        services: Pre-built service graph (tests)

    Returns:
        Configured FastAPI app
    """
    if services is not None:
        settings = services.settings
    if settings is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
    if services is None:
        services = Services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        services.close()

    app = FastAPI(
        title="Identity Core API",
        description="Authentication, MFA and session management",
        version="1.0.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production: specify allowed origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(auth_router)
    app.include_router(account_router)
    app.include_router(admin_router)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        database_ok = services.database.check_connection()
        return ok({
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "dropped_events": services.events.dropped,
        })

    # Exception handlers
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        """Map typed core errors to the status table."""
        headers = {}
        extra = {}

        if isinstance(exc, RateLimitExceeded):
            headers["Retry-After"] = str(exc.retry_after)
            extra["retry_after"] = exc.retry_after
        if exc.kind in (ErrorKind.INVALID_CREDENTIALS, ErrorKind.SESSION_EXPIRED):
            headers["WWW-Authenticate"] = "Bearer"

        details = exc.details
        if settings.is_production:
            details = {k: v for k, v in details.items() if k in PUBLIC_DETAILS}
        if details:
            extra["details"] = details

        if exc.status_code >= 500:
            logger.error(f"{exc.kind.value} on {request.url.path}: {exc.message}")

        return JSONResponse(
            status_code=exc.status_code,
            content=failure(exc.kind.value, exc.message, **extra),
            headers=headers or None,
        )

    # Query models built inside endpoints raise pydantic errors directly
    @app.exception_handler(ValidationError)
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: Union[RequestValidationError, ValidationError]):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content=failure(ErrorKind.INVALID_INPUT.value, f"{location}: {message}" if location else message),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=failure(
                ErrorKind.INTERNAL.value,
                "An unexpected error occurred" if settings.is_production else str(exc),
            ),
        )

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
