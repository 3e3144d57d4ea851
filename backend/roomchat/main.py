"""Roomchat Backend Application.

Main entry point for the roomchat service: public chat rooms, direct
messages, read receipts and typing indicators on top of a DuckDB store whose
rows are protected by row-level security policies.

Modules:
    - auth: bearer-token verification and caller provisioning
    - profiles: user profiles
    - rooms: rooms and membership
    - messages: room messages, read receipts, typing indicators
    - direct: one-to-one conversations
    - realtime: WebSocket change feed
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomchat.auth.router import router as auth_router
from roomchat.config import get_config
from roomchat.db.store import ChatStore
from roomchat.direct.router import router as direct_router
from roomchat.errors import install_exception_handlers
from roomchat.messages.router import router as messages_router
from roomchat.profiles.router import router as profiles_router
from roomchat.realtime.hub import get_hub
from roomchat.realtime.router import router as realtime_router
from roomchat.rooms.router import router as rooms_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every connection; websockets logs every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()
    if not config.secrets.jwt.configured:
        raise RuntimeError(
            "jwt.secret_key is not set. Add it to roomchat.secrets.yaml "
            "(or point ROOMCHAT_SECRETS_FILE at a file that has it)."
        )

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = ChatStore.get_instance(config.database.path, config.database.published_tables)
    hub = get_hub()
    hub.max_subscriptions = config.realtime.max_subscriptions_per_connection
    hub.attach(store)
    logger.info("Roomchat started (db=%s)", store.db_path)

    yield

    # Shutdown
    hub.detach()
    logger.info("Roomchat shutting down")


app = FastAPI(
    title="Roomchat Backend",
    description="Chat rooms, direct messages and a realtime change feed with row-level security",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_exception_handlers(app)

app.include_router(auth_router)
app.include_router(profiles_router)
app.include_router(rooms_router)
app.include_router(messages_router)
app.include_router(direct_router)
app.include_router(realtime_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run("roomchat.main:app", host=config.server.host, port=config.server.port)
