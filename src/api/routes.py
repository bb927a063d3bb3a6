"""Operational endpoints: health, status and session debug listing.

Read-only; nothing here touches session state.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from api.dependencies import get_app_settings, get_registry
from api.schemas import ApiFlags, DebugResponse, HealthResponse, SessionInfo, StatusResponse
from config.settings import Settings
from relay.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["ops"])

_STARTED_AT = time.monotonic()


def _now() -> datetime:
    return datetime.now(timezone.utc)


@router.get("/health", response_model=HealthResponse)
async def health(
    settings: Settings = Depends(get_app_settings),
    registry: SessionRegistry = Depends(get_registry),
) -> HealthResponse:
    return HealthResponse(
        timestamp=_now(),
        connections=registry.active_count,
        port=settings.port,
        apis=ApiFlags(openai=settings.llm_configured, elevenlabs=settings.voice_enabled),
    )


@router.get("/status", response_model=StatusResponse)
async def status(
    settings: Settings = Depends(get_app_settings),
    registry: SessionRegistry = Depends(get_registry),
) -> StatusResponse:
    return StatusResponse(
        connections=registry.active_count,
        elevenlabs=settings.voice_enabled,
        openai=settings.llm_configured,
        timestamp=_now(),
        uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
    )


@router.get("/debug", response_model=DebugResponse)
async def debug(
    settings: Settings = Depends(get_app_settings),
    registry: SessionRegistry = Depends(get_registry),
) -> DebugResponse:
    sessions = [
        SessionInfo(
            connection_id=summary.connection_id,
            session_id=summary.session_id,
            phase=summary.phase,
            has_greeted=summary.has_greeted,
            turns=summary.turns,
            is_twilio=summary.is_twilio,
            connected_at=summary.connected_at,
        )
        for summary in registry.snapshot()
    ]
    return DebugResponse(
        connections=sessions,
        total_connections=len(sessions),
        timestamp=_now(),
        environment={"environment": settings.environment, "port": settings.port},
    )
