"""teamchat relay application.

This is the main entry point for the relay service. The relay
authenticates clients, fans chat, typing and membership events out to
per-workspace rooms, and serves each room's message backlog.

Modules:
    - relay: WebSocket event stream and history endpoint
    - auth: bearer token verification
    - client: the asyncio messaging client that talks to this service
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from teamchat.config import get_config
from teamchat.relay import relay
from teamchat.relay.router import router as relay_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every TCP connection; websockets logs every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in teamchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    relay.max_messages_per_room = config.history.max_messages_per_room
    logger.info(
        f"Relay ready on http://{config.server.host}:{config.server.port} "
        f"(backlog bound {config.history.max_messages_per_room} messages/room)"
    )

    yield  # Application runs here

    logger.info("Application shutdown complete")


app = FastAPI(
    title="teamchat relay",
    description="Real-time per-workspace messaging relay",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(relay_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
