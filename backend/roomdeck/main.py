"""roomdeck inspection service.

Exposes the active room session core of an embedding client over HTTP for
diagnostics. The embedding application builds its RoomManager with
concrete collaborators and installs it with ``set_room_manager``; this
service only reads and drives it.

Modules:
    - sessions: registry, reconciler, stream multiplexer, resync, presence
    - callbacks: extension hook chains
    - store: in-memory message and subscription stores
    - reactive: dependency tracking and scheduler
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from roomdeck.config import get_config
from roomdeck.sessions.manager import get_room_manager
from roomdeck.sessions.router import router as sessions_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomdeck.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(f"Room capacity configured: max_open_rooms={config.max_open_rooms}")

    yield  # Application runs here

    # Shutdown
    manager = get_room_manager()
    if manager is not None:
        manager.stop()
        await manager.tasks.drain()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="roomdeck API",
    description="Inspection API for the active room session core",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
