"""ConversationRelay WebSocket endpoint.

Each connection gets its own CallSessionHandler. Frames are handled one at a
time in arrival order until the call stops or the peer goes away.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.dependencies import get_app_settings, get_registry, get_responder
from config.settings import Settings
from relay.protocol import SpeechInstructionBuilder
from relay.registry import SessionRegistry
from relay.responder import ResponseGenerator
from relay.session import CallSessionHandler

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the session Transport protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send_json(self, data: dict[str, Any]) -> None:
        await self._websocket.send_text(json.dumps(data, ensure_ascii=False))

    async def ping(self) -> bool:
        # ASGI has no ping message; use the server's protocol object when it has one.
        protocol = getattr(self._websocket._send, "__self__", None)
        ping = getattr(protocol, "ping", None)
        if ping is None:
            LOGGER.debug("ASGI server exposes no ping; relying on server keep-alive")
            return False
        await ping()
        return True

    async def close(self, code: int = 1000) -> None:
        await self._websocket.close(code=code)


@router.websocket("/")
@router.websocket("/relay")
async def conversation_relay(
    websocket: WebSocket,
    responder: ResponseGenerator = Depends(get_responder),
    settings: Settings = Depends(get_app_settings),
    registry: SessionRegistry = Depends(get_registry),
) -> None:
    await websocket.accept()
    handler = CallSessionHandler(
        WebSocketTransport(websocket),
        responder=responder,
        builder=SpeechInstructionBuilder.from_settings(settings),
        settings=settings,
        registry=registry,
    )
    await handler.open(query=websocket.query_params, headers=websocket.headers)

    try:
        while not handler.ended:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                LOGGER.info(
                    "Connection closed call_sid=%s code=%s",
                    handler.session.session_id,
                    message.get("code"),
                )
                await handler.terminate("transport_closed")
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            await handler.handle_frame(raw)
    except WebSocketDisconnect as exc:
        LOGGER.info("Connection dropped call_sid=%s code=%s", handler.session.session_id, exc.code)
        await handler.terminate("transport_closed")
    except Exception as exc:
        LOGGER.exception("WebSocket error on %s: %s", handler.session.session_id, exc)
        await handler.terminate("transport_error", close_transport=True)
    finally:
        await handler.terminate("transport_closed")
