"""FastAPI application wiring for the live-chat relay.

This module bootstraps the service:

- Configures logging, CORS (optional for the admin UI), Prometheus metrics
  and rate limiting.
- Builds the relay from a message store, a connection registry and the
  scripted dialogue, and exposes it on ``app.state.relay``.
- Serves the ``/ws`` real-time channel, the chat HTTP read API and the
  health/version endpoints.

:func:`create_app` accepts pre-built collaborators so tests can run the whole
stack on an in-memory store.  Without a repository the SQLAlchemy store
configured by ``DATABASE_URL`` is used and its tables are created on startup.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .chat.registry import ConnectionRegistry, InMemoryConnectionRegistry
from .chat.relay import RelayProtocolHandler
from .chat.repository import ChatMessageRepository, SqlAlchemyChatMessageRepository
from .chat.script import BRAND_NAME, ScriptEngine
from .chat.service import ChatMessageService
from .core.config import RelaySettings, get_relay_settings
from .core.rate_limit import limiter
from .models.session import create_schema, get_sessionmaker
from .routers import live_chat

load_dotenv()

logger = logging.getLogger(__name__)


def _default_repository(settings: RelaySettings) -> ChatMessageRepository:
    factory = get_sessionmaker(settings.database_url)
    create_schema(factory)
    logger.info("Chat message store ready")
    return SqlAlchemyChatMessageRepository(factory)


def create_app(
    repository: ChatMessageRepository | None = None,
    registry: ConnectionRegistry | None = None,
    settings: RelaySettings | None = None,
) -> FastAPI:
    """Build the relay application."""

    settings = settings or get_relay_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.relay is None:
            app.state.relay = RelayProtocolHandler(
                ChatMessageService(_default_repository(settings)),
                registry or InMemoryConnectionRegistry(),
                script_engine=ScriptEngine(),
                settings=settings,
            )
        if not settings.admin_token:
            logger.warning("CHAT_ADMIN_TOKEN is not set; admin features are unavailable")
        yield

    app = FastAPI(title="Live Chat Relay", version=__version__, lifespan=lifespan)
    app.state.relay = None
    if repository is not None:
        app.state.relay = RelayProtocolHandler(
            ChatMessageService(repository),
            registry or InMemoryConnectionRegistry(),
            script_engine=ScriptEngine(),
            settings=settings,
        )

    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    # Optional CORS for admin UI
    admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
    if admin_ui_origins:
        origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(live_chat.router)

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    @app.get("/api/config")
    async def config():
        """Expose selected widget configuration from the environment."""
        return {
            "BRAND_NAME": BRAND_NAME,
            "CHAT_MAX_MESSAGE_LENGTH": settings.max_message_length,
            "SESSION_ID_MAX_LENGTH": settings.session_id_max_length,
            "CHAT_SCRIPT_ENABLED": settings.script_enabled,
        }

    return app


app = create_app()
