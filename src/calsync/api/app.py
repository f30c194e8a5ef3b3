"""calsync HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the database pool and wires the services
- Health endpoint at GET /api/health
- Sync, events and integrations routers

Tests pass a pre-built ``Services`` to ``create_app``; the lifespan then
skips all startup I/O.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync import __version__
from calsync.api.deps import OAuthStateStore
from calsync.api.middleware import register_error_handlers
from calsync.api.routers.events import router as events_router
from calsync.api.routers.integrations import router as integrations_router
from calsync.api.routers.sync import router as sync_router
from calsync.config import CalsyncConfig, load_config
from calsync.core.telemetry import init_telemetry
from calsync.ratelimit import InMemoryRateLimiter, RateLimiter
from calsync.services import Services, open_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the database pool and provider clients."""
    async with AsyncExitStack() as stack:
        if app.state.services is None:
            config: CalsyncConfig = app.state.config
            init_telemetry()
            app.state.services = await stack.enter_async_context(open_services(config))
            configured = [
                provider.value
                for provider, client in app.state.services.providers.items()
                if client.configured
            ]
            logger.info("calsync API ready (configured providers: %s)", configured or "none")
        yield


def create_app(
    config: CalsyncConfig | None = None,
    *,
    services: Services | None = None,
    rate_limiter: RateLimiter | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration.  Defaults to :func:`~calsync.config.load_config`.
    services:
        Pre-wired services.  When given, the lifespan does not connect to
        the database.
    rate_limiter:
        Limiter for ``POST /api/sync``.  Defaults to an in-memory limiter
        sized from ``config.rate_limit``.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    """
    config = config or load_config()
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    app = FastAPI(
        title="calsync API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.state.config = config
    app.state.services = services
    app.state.rate_limiter = rate_limiter or InMemoryRateLimiter(
        config.rate_limit.max_requests,
        config.rate_limit.window_s,
    )
    app.state.oauth_states = OAuthStateStore()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(sync_router)
    app.include_router(events_router)
    app.include_router(integrations_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
