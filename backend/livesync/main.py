"""livesync status service.

Runs the realtime client for the configured actor inside a FastAPI app so
the connection can be inspected and retried over HTTP.

Modules:
    - realtime: connection, channel registry, event routing, typing signals
    - backend_api: REST collaborator (profiles, conversations, writes)
    - reconciliation: optimistic local state for messages and comments
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from livesync.config import get_config
from livesync.realtime.client import LiveSyncClient
from livesync.realtime.router import router as realtime_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every request; websockets logs every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port}"
    )

    client = LiveSyncClient.from_config(config)
    app.state.livesync = client
    await client.init()
    logger.info(
        f"Realtime client started: state={client.get_connection_state()} url={config.realtime.url}"
    )

    yield  # Application runs here

    await client.teardown()
    app.state.livesync = None
    logger.info("Application shutdown complete")


app = FastAPI(
    title="livesync",
    description="Realtime change-feed client with connection status endpoints",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(realtime_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
