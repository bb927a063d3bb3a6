"""Per-connection call session state machine.

One ``CallSessionHandler`` owns one ``CallSession`` for the lifetime of a
transport connection. Frames are handled strictly in arrival order; the only
suspending step is reply generation, so turns are serialized.

Phases: pending -> active -> ended. ``ended`` is sticky.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from config.settings import Settings
from relay.errors import MalformedFrameError, ResponseGenerationError
from relay.identity import (
    PeerInfo,
    classify_peer,
    is_placeholder,
    new_placeholder_id,
    resolve_session_id,
)
from relay.keepalive import LivenessMonitor
from relay.protocol import (
    InboundFrame,
    SpeechInstructionBuilder,
    decode_frame,
)
from relay.registry import SessionRegistry
from relay.responder import ResponseGenerator

LOGGER = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_json(self, data: dict[str, Any]) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self, code: int = 1000) -> None: ...


class Phase(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.text}


@dataclass
class CallSession:
    session_id: str = field(default_factory=new_placeholder_id)
    phase: Phase = Phase.PENDING
    has_greeted: bool = False
    history: list[Turn] = field(default_factory=list)
    keepalive: LivenessMonitor | None = None
    peer: PeerInfo | None = None
    connection_id: int | None = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_reason: str | None = None
    events_received: int = 0
    media_packets: int = 0
    malformed_frames: int = 0

    @property
    def ended(self) -> bool:
        return self.phase is Phase.ENDED

    def append_turn(self, role: Role, text: str) -> None:
        if self.ended:
            raise RuntimeError(f"Session {self.session_id} has ended; cannot append turns")
        self.history.append(Turn(role=role, text=text))

    def trailing_window(self, size: int) -> list[Turn]:
        if size <= 0:
            return []
        return self.history[-size:]


class CallSessionHandler:
    """Drives one call session from connection accept to teardown."""

    def __init__(
        self,
        transport: Transport,
        *,
        responder: ResponseGenerator,
        builder: SpeechInstructionBuilder,
        settings: Settings,
        registry: SessionRegistry | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._transport = transport
        self._responder = responder
        self._builder = builder
        self._settings = settings
        self._registry = registry
        self._rng = rng or random.Random()
        self.session = CallSession()
        self._handlers = {
            "connected": self._on_connected,
            "start": self._on_start,
            "media": self._on_media,
            "transcript": self._on_transcript,
            "mark": self._on_mark,
            "stop": self._on_stop,
        }

    @property
    def ended(self) -> bool:
        return self.session.ended

    async def open(
        self,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> CallSession:
        """Bind the session to a freshly accepted connection."""

        session = self.session
        self._apply_identity(query=query or {})
        if is_placeholder(session.session_id):
            LOGGER.info("Using temporary call id %s: no callSid in URL query", session.session_id)

        session.peer = classify_peer(headers or {})
        if not session.peer.is_twilio:
            LOGGER.warning(
                "Connection %s may not come from Twilio (user-agent=%r)",
                session.session_id,
                session.peer.user_agent,
            )

        monitor = LivenessMonitor(
            self._transport.ping,
            interval=self._settings.keepalive_interval_seconds,
            on_failure=self._on_keepalive_failure,
            label=session.session_id,
        )
        session.keepalive = monitor
        monitor.start()

        if self._registry is not None:
            self._registry.register(session)
        LOGGER.info(
            "Connection established call_sid=%s twilio=%s active=%d",
            session.session_id,
            session.peer.is_twilio,
            self._registry.active_count if self._registry is not None else 1,
        )
        return session

    async def handle_frame(self, raw: str | bytes) -> None:
        """Decode and dispatch one inbound frame; malformed frames are logged and dropped."""

        session = self.session
        if session.ended:
            LOGGER.debug("Ignoring frame for ended session %s", session.session_id)
            return

        try:
            frame = decode_frame(raw)
        except MalformedFrameError as exc:
            session.malformed_frames += 1
            preview = raw[:200]
            LOGGER.warning(
                "Malformed frame on %s: %s (raw=%r)", session.session_id, exc.detail, preview
            )
            return

        await self.dispatch(frame)

    async def dispatch(self, frame: InboundFrame) -> None:
        session = self.session
        if session.ended:
            LOGGER.debug("Ignoring %s for ended session %s", frame.kind, session.session_id)
            return

        session.events_received += 1
        self._apply_identity(event=frame.payload)
        LOGGER.debug("Event received call_sid=%s event=%s", session.session_id, frame.kind)

        handler = self._handlers.get(frame.kind, self._on_unknown)
        await handler(frame)

    async def terminate(self, reason: str, *, close_transport: bool = False) -> bool:
        """Single terminal path. Returns False if the session had already ended."""

        session = self.session
        if session.ended:
            return False

        session.phase = Phase.ENDED
        session.ended_reason = reason
        if session.keepalive is not None:
            session.keepalive.cancel()
            session.keepalive = None
        if self._registry is not None:
            self._registry.unregister(session)

        LOGGER.info(
            "Call ended call_sid=%s reason=%s turns=%d active=%d",
            session.session_id,
            reason,
            len(session.history),
            self._registry.active_count if self._registry is not None else 0,
        )

        if close_transport:
            try:
                await self._transport.close()
            except Exception as exc:
                LOGGER.warning("Closing transport for %s failed: %s", session.session_id, exc)
        return True

    def _apply_identity(
        self,
        *,
        query: Mapping[str, Any] | None = None,
        event: Mapping[str, Any] | None = None,
    ) -> None:
        resolution = resolve_session_id(self.session.session_id, query=query, event=event)
        if resolution is None:
            return
        self.session.session_id = resolution.value
        if self.session.keepalive is not None:
            self.session.keepalive.label = resolution.value
        LOGGER.info(
            "Call id resolved %s -> %s (source=%s)",
            resolution.previous,
            resolution.value,
            resolution.source,
        )

    async def _send(self, data: dict[str, Any]) -> bool:
        if self.session.ended:
            LOGGER.info(
                "Discarding %s for ended session %s", data.get("event"), self.session.session_id
            )
            return False
        await self._transport.send_json(data)
        return True

    async def _on_connected(self, frame: InboundFrame) -> None:
        await self._send(self._builder.handshake_ack())
        LOGGER.info("Handshake acknowledged for %s", self.session.session_id)

    async def _on_start(self, frame: InboundFrame) -> None:
        session = self.session
        event = frame.event
        if session.phase is not Phase.PENDING:
            LOGGER.warning("Duplicate start event for %s ignored", session.session_id)
            return

        LOGGER.info(
            "Call start call_sid=%s stream_sid=%s",
            session.session_id,
            event.start.streamSid if event.start else None,
        )
        if not session.has_greeted:
            if await self._send(self._builder.speak(self._settings.greeting_text)):
                session.has_greeted = True
                LOGGER.info("Greeting sent for %s", session.session_id)
        session.phase = Phase.ACTIVE

    async def _on_media(self, frame: InboundFrame) -> None:
        event = frame.event
        self.session.media_packets += 1
        if self._rng.random() < self._settings.media_log_sample_rate:
            media = event.media
            LOGGER.debug(
                "Media sample call_sid=%s packets=%d payload_len=%d timestamp=%s",
                self.session.session_id,
                self.session.media_packets,
                len(media.payload or "") if media else 0,
                media.timestamp if media else None,
            )

    async def _on_transcript(self, frame: InboundFrame) -> None:
        session = self.session
        event = frame.event
        if session.phase is not Phase.ACTIVE:
            LOGGER.info("Transcript before call start on %s ignored", session.session_id)
            return

        transcript = event.transcript
        speech = (transcript.speech or "").strip() if transcript else ""
        LOGGER.info(
            "Transcript call_sid=%s speech=%r confidence=%s final=%s",
            session.session_id,
            speech,
            transcript.confidence if transcript else None,
            transcript.is_final if transcript else None,
        )
        if len(speech) <= self._settings.min_transcript_chars:
            return

        window = session.trailing_window(self._settings.history_window_turns)
        session.append_turn(Role.USER, speech)
        try:
            reply = await self._responder.generate(speech, window)
        except ResponseGenerationError as exc:
            LOGGER.warning("Reply generation failed for %s: %s", session.session_id, exc.detail)
            reply = self._settings.fallback_reply

        if session.ended:
            LOGGER.info("Reply for %s arrived after call end; discarded", session.session_id)
            return
        session.append_turn(Role.ASSISTANT, reply)
        await self._send(self._builder.speak(reply))
        LOGGER.info("Reply sent call_sid=%s reply=%r", session.session_id, reply)

    async def _on_mark(self, frame: InboundFrame) -> None:
        event = frame.event
        LOGGER.debug("Mark received call_sid=%s mark=%s", self.session.session_id, event.mark)

    async def _on_stop(self, frame: InboundFrame) -> None:
        event = frame.event
        await self.terminate(f"stop:{event.reason or 'unspecified'}", close_transport=True)

    async def _on_unknown(self, frame: InboundFrame) -> None:
        LOGGER.info("Unknown event %r on %s ignored", frame.kind, self.session.session_id)

    async def _on_keepalive_failure(self, exc: BaseException) -> None:
        await self.terminate("transport_error", close_transport=True)
