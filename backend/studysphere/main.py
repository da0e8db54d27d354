# backend/studysphere/main.py
"""
StudySphere messaging API.

Mounts the v1 conversation routes, the Prometheus endpoint and the error
envelope. Each worker owns one SessionRegistry and one DeliveryBus; when
REDIS_URL is configured the bus relays events through Broadcaster so
sessions on every worker receive them.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI, Response

from .core.broadcast import connect_broadcast, disconnect_broadcast
from .core.config import settings
from .core.crypto import encryption_available
from .errors import register_error_handlers
from .init_db import init_db
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes.v1 import conversations as conversations_v1
from .services.messaging import DeliveryBus, SessionRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "StudySphere Messaging API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info("%s starting up (environment=%s)", API_TITLE, settings.environment)

    if settings.is_sqlite:
        init_db()
    if not encryption_available():
        logger.warning("MESSAGE_ENCRYPTION_KEY not set; message content is stored in plaintext")

    broadcast = await connect_broadcast()
    registry: SessionRegistry = app.state.session_registry
    bus = DeliveryBus(registry, broadcast=broadcast)
    app.state.delivery_bus = bus
    bus.start_relay()

    yield

    logger.info("%s shutting down...", API_TITLE)
    await bus.stop_relay()
    try:
        await disconnect_broadcast()
    except Exception as e:
        logger.error("[BROADCAST] Error disconnecting: %s", e)


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)

    # In-process defaults; the lifespan swaps in a broadcast-aware bus
    registry = SessionRegistry()
    app.state.session_registry = registry
    app.state.delivery_bus = DeliveryBus(registry)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(conversations_v1.router, prefix="/conversations")
    app.include_router(api_v1)

    @app.get("/health", include_in_schema=False)
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type(),
        )

    return app


app = create_app()
