"""Time-off service — FastAPI Application Factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from timeoff import __version__
from timeoff.common.events import WebhookEventSink, dispatcher, log_event_sink
from timeoff.common.exceptions import register_exception_handlers
from timeoff.common.rate_limit import limiter
from timeoff.config import settings
from timeoff.leave.router import (
    balances_router,
    leave_types_router,
    leaves_router,
    reports_router,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Register event sinks on startup; flush in-flight deliveries on shutdown."""
    sinks = [log_event_sink]
    if settings.EVENT_WEBHOOK_URL:
        sinks.append(
            WebhookEventSink(
                settings.EVENT_WEBHOOK_URL,
                timeout=settings.EVENT_WEBHOOK_TIMEOUT_SECONDS,
            )
        )
    for sink in sinks:
        dispatcher.register(sink)
    logger.info("Event sinks registered: %s", sinks)
    yield
    await dispatcher.drain()
    for sink in sinks:
        dispatcher.unregister(sink)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    )

    app = FastAPI(
        title="Time-Off Service",
        description="Leave policies, balance ledger and leave request lifecycle",
        version=__version__,
        docs_url="/api/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url="/api/redoc" if settings.ENVIRONMENT != "production" else None,
        lifespan=lifespan,
    )

    # Exception handlers (RFC 7807)
    register_exception_handlers(app)

    # Rate limiting (slowapi)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check (no auth)
    @app.get("/api/v1/health", tags=["system"])
    async def health_check():
        return {
            "status": "healthy",
            "version": __version__,
            "environment": settings.ENVIRONMENT,
        }

    # Register routers
    app.include_router(leave_types_router, prefix="/api/v1/leave-types", tags=["leave-types"])
    app.include_router(balances_router, prefix="/api/v1/leave-balances", tags=["leave-balances"])
    app.include_router(leaves_router, prefix="/api/v1/leaves", tags=["leaves"])
    app.include_router(reports_router, prefix="/api/v1/reports", tags=["reports"])

    return app


app = create_app()
