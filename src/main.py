"""Entry point for the ConversationRelay call relay service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.relay_routes import router as relay_router
from api.routes import router as ops_router
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    LOGGER.info(
        "Relay ready on port %s: openai=%s elevenlabs=%s",
        settings.port,
        settings.llm_configured,
        settings.voice_enabled,
    )
    yield


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)

app = FastAPI(
    title="Voxemy ConversationRelay",
    description="Relays Twilio ConversationRelay calls to an LLM-backed voice assistant.",
    lifespan=lifespan,
)
app.include_router(ops_router)
app.include_router(relay_router)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        # websockets protocol objects expose ping(), which WebSocketTransport uses.
        ws="websockets",
        ws_ping_interval=settings.keepalive_interval_seconds,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
