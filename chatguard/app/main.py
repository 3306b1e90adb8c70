from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatguard.app.api.messages import router as messages_router
from chatguard.app.api.security import router as security_router
from chatguard.app.core.config import Settings, settings as default_settings
from chatguard.app.core.http_client import init_http_client
from chatguard.app.core.logging import get_logger, setup_logging
from chatguard.app.db.async_session import (
    create_engine_for_url,
    create_session_maker,
    init_db,
)
from chatguard.app.exceptions import ChatGuardException, RateLimitedError
from chatguard.app.middleware.attestation import AttestationMiddleware
from chatguard.app.middleware.rate_limit import RateLimitConfig, SubmissionRateLimiter
from chatguard.app.middleware.security_log import create_event_log
from chatguard.app.middleware.session_id import SESSION_HEADER, SessionIdMiddleware
from chatguard.app.providers import create_provider
from chatguard.app.services.chat import ChatService
from chatguard.app.services.message_store import InMemoryMessageStore, SqlMessageStore


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to build the services from (module settings if None)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Builds the attestation middleware, rate limiter and message store
        once per process and publishes them on app.state.
        """
        async with init_http_client() as http_client:
            event_log = create_event_log(config=settings)
            attestation = AttestationMiddleware(
                provider=create_provider(http_client, config=settings),
                event_log=event_log,
                ttl_seconds=settings.attestation_token_ttl_seconds,
            )
            rate_limiter = SubmissionRateLimiter(
                config=RateLimitConfig.from_settings(settings),
                max_sessions=settings.rate_limit_max_sessions,
            )

            engine = None
            if settings.database_url:
                engine = create_engine_for_url(settings.database_url)
                await init_db(engine)
                store = SqlMessageStore(create_session_maker(engine))
            else:
                store = InMemoryMessageStore()

            app.state.attestation = attestation
            app.state.rate_limiter = rate_limiter
            app.state.message_store = store
            app.state.chat_service = ChatService.from_settings(
                settings, store, rate_limiter, attestation
            )

            logger.info(
                "Application startup complete",
                extra={
                    "store": type(store).__name__,
                    "event_log": type(event_log).__name__,
                    "attestation_enforced": settings.attestation_enforced,
                    "debug_mode": settings.debug,
                },
            )

            yield

            await store.close()
            if engine is not None:
                await engine.dispose()
            await event_log.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ChatGuard",
        description="Anti-abuse admission layer for a public chat: content validation, "
                    "per-session rate limiting and attestation enforcement",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(SessionIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER, "Retry-After"],
        max_age=600,
    )

    app.include_router(messages_router)
    app.include_router(security_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.exception_handler(ChatGuardException)
    async def chatguard_exception_handler(
        request: Request, exc: ChatGuardException
    ) -> JSONResponse:
        """Map admission failures to JSON error bodies."""
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message.
        """
        session_id = getattr(request.state, "session_id", "unknown")
        logger.exception(
            f"Unhandled exception [session_id={session_id}]",
            extra={"session_id": session_id, "exception_type": type(exc).__name__},
        )
        content = {"error": "internal_error", "message": "Internal server error"}
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
