"""
streamchat backend application.

FastAPI application with structured logging, error handling, and the
streaming chat orchestrator.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from cachetools import TTLCache
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from streamchat import __version__
from streamchat.api import chat_router, health_router
from streamchat.config import get_settings
from streamchat.core import get_logger, setup_logging
from streamchat.core.middleware import RequestContextMiddleware, setup_exception_handlers
from streamchat.db import (
    dispose_engine,
    get_session_factory,
    reset_session_factory,
    verify_database_connection,
)
from streamchat.providers import OpenRouterProvider
from streamchat.services import (
    BroadcastHub,
    ChatService,
    ModelCatalog,
    ModelResolver,
)

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting streamchat backend",
        data={
            "host": settings.host,
            "port": settings.port,
            "debug": settings.debug,
            "default_model": settings.default_model,
        },
    )

    # Verify database connectivity (does NOT run migrations)
    if verify_database_connection():
        logger.info("Database connection verified")
    else:
        logger.warning(
            "Database connection failed - run 'alembic upgrade head' to initialize"
        )

    # Provider may be injected before startup (useful in tests)
    provider_created = False
    provider = getattr(_app.state, "provider", None)
    if provider is None:
        provider = OpenRouterProvider.from_settings(settings)
        _app.state.provider = provider
        provider_created = True
    if not settings.openrouter_api_key and provider_created:
        logger.warning("OPENROUTER_API_KEY is not set - upstream calls will be rejected")

    hub = BroadcastHub(queue_size=settings.broadcast_queue_size)
    catalog = ModelCatalog(
        provider, TTLCache(maxsize=1, ttl=settings.models_cache_ttl_seconds)
    )
    _app.state.broadcast_hub = hub
    _app.state.model_resolver = ModelResolver(catalog, settings.default_model)
    _app.state.chat_service = ChatService(
        provider,
        hub,
        _app.state.model_resolver,
        get_session_factory(),
        settings,
    )

    yield

    # Shutdown
    logger.info("Shutting down streamchat backend")
    await _app.state.chat_service.shutdown(timeout=SHUTDOWN_GRACE_SECONDS)
    _app.state.chat_service = None
    hub.shutdown()
    if provider_created:
        await provider.aclose()
        _app.state.provider = None
    dispose_engine()
    reset_session_factory()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="streamchat",
        description="Streaming chat backend with batched SSE fan-out",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)

    # Request context (inject request ID, log requests)
    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(health_router)
    app.include_router(chat_router)

    return app


# Create application instance
app = create_app()
