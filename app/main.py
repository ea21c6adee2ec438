"""Mini Chat API - Main Application Module.

This module initializes the FastAPI application with proper configuration,
middleware, routing, and lifecycle management for the chat service.
"""

import logging
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

# Add the project root to Python path if running directly
if __name__ == "__main__":
    project_root = Path(__file__).parent.parent
    sys.path.insert(0, str(project_root))

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import Headers, MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.core.config import settings
from app.core.logging import configure_logging, request_id_var
from app.database import engine, get_db
from app.domains.chat.controller import DisconnectedResponse
from app.domains.chat.gateway import ChatGateway
from app.domains.llm.factory import create_completion_provider
from app.exceptions.base import BaseAppException, RequestAbortedError
from app.schemas.base import ErrorResponse
from models import Base

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Manage application lifecycle events."""
    logger.info(f"Starting {settings.app_name} ({settings.environment.value})")

    # Development mode: Auto-create tables if they don't exist
    # Production: Use Alembic migrations (alembic upgrade head)
    if settings.is_development:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Development mode: database tables created/verified")
    else:
        logger.info("Use 'alembic upgrade head' to manage the database schema")

    yield

    logger.info(f"Shutting down {settings.app_name}")
    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Raises:
        ProviderConfigurationError: ``LLM_PROVIDER`` does not name a known
            provider. The process must not start serving in that case.
    """
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Minimal chat service with pluggable completion providers",
        version=settings.version,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    app.state.completion_provider = create_completion_provider(settings)

    # Add middleware
    setup_middleware(app)

    # Add exception handlers
    setup_exception_handlers(app)

    # Include routers
    setup_routers(app)

    return app


class RequestIdMiddleware:
    """Tag each request with an id, expose it to logging and echo it back.

    Implemented as plain ASGI so that a handler which deliberately sends
    nothing (client already gone) is not forced into a response.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_id = headers.get(REQUEST_ID_HEADER) or headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id
        reset_token = request_id_var.set(request_id)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(reset_token)


def setup_middleware(app: FastAPI):
    """Configure application middleware."""
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    # Added last so it wraps CORS and sees every response
    app.add_middleware(RequestIdMiddleware)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def setup_exception_handlers(app: FastAPI):
    """Configure global exception handlers."""

    @app.exception_handler(BaseAppException)
    async def app_exception_handler(request: Request, exc: BaseAppException):
        if isinstance(exc, RequestAbortedError):
            return DisconnectedResponse()

        body = ErrorResponse(
            error=exc.error_code,
            message=exc.message,
            details=exc.details or None,
            retry_after_ms=exc.retry_after_ms,
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=exc.status_code, content=body.to_json())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        body = ErrorResponse(
            error="HTTP_ERROR",
            message=str(exc.detail) if exc.detail else "An error occurred",
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=exc.status_code, content=body.to_json(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Convert errors to JSON-serializable format
        errors = []
        for error in exc.errors():
            error_dict = {
                "loc": list(error.get("loc", [])),
                "msg": str(error.get("msg", "Validation error")),
                "type": error.get("type", "value_error"),
            }
            errors.append(error_dict)

        body = ErrorResponse(
            error="VALIDATION_ERROR",
            message="Validation error",
            details=errors,
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=400, content=body.to_json())


def setup_routers(app: FastAPI):
    """Configure application routers."""
    # Import routers
    from app.domains.chat.controller import router as conversation_router

    @app.get("/healthz")
    async def health_check():
        """Liveness probe; answers as long as the process serves requests."""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readiness_check(db: AsyncSession = Depends(get_db)):
        """Readiness probe; checks the database with ``SELECT 1``."""
        try:
            await ChatGateway(db).ping()
        except BaseAppException as e:
            logger.warning(f"Readiness check failed: {e.message}")
            return JSONResponse(
                status_code=500,
                content={"status": "unavailable", "database": "unreachable"},
            )
        return {"status": "ready", "database": "ok"}

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "provider": app.state.completion_provider.name,
            "docs_url": "/docs" if settings.is_development else None,
        }

    app.include_router(conversation_router)


# Create the application instance
app = create_app()


def main():
    """Entry point for running the application directly."""
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.value.lower(),
    )


if __name__ == "__main__":
    main()
