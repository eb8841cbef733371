"""Relay Backend Application.

This is the main entry point for the real-time chat relay. Clients
authenticate with a JWT, focus on one conversation room at a time, and
exchange messages with presence, typing and delivery/read updates.

Modules:
    - chat: WebSocket session engine (registry, rooms, receipts, heartbeat)
    - conversations: HTTP chat list, chat creation, message send and history
    - auth: JWT bearer-token verification and the caller identity route
    - store: DuckDB-backed subjects, conversations and messages
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relay.auth.router import router as auth_router
from relay.chat.engine import get_engine, set_engine
from relay.chat.router import router as chat_router
from relay.config import get_config
from relay.conversations.router import router as conversations_router
from relay.store.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    engine = get_engine()
    if config.heartbeat.enabled:
        engine.start_heartbeat()
    else:
        logger.info("Heartbeat disabled in config")

    logger.info(
        f"Relay running on http://{config.server.host}:{config.server.port} "
        f"(duplicate_policy={config.session.duplicate_policy.value})"
    )

    yield  # Application runs here

    # Shutdown
    await engine.stop_heartbeat()
    set_engine(None)
    ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Relay API",
    description="Real-time chat relay: presence, rooms, messages and read receipts",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(auth_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with connected subjects and occupied rooms.
    """
    engine = get_engine()
    return {
        "status": "ok",
        "online": len(engine.registry),
        "rooms": len(engine.rooms.active_rooms()),
    }
