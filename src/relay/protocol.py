"""ConversationRelay wire format.

Inbound frames are JSON objects tagged by an ``event`` field. Known kinds are
validated into typed models; unknown kinds are kept as ``UnknownEvent`` so the
session can ignore them without failing the connection.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, ValidationError

from relay.errors import MalformedFrameError

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings

KNOWN_EVENT_KINDS = frozenset({"connected", "start", "media", "transcript", "mark", "stop"})


def _only(*types: type):
    """Side fields only feed logs; a wrongly typed value becomes None instead of failing the frame."""

    def _coerce(value: Any) -> Any:
        if isinstance(value, bool) and bool not in types:
            return None
        return value if isinstance(value, types) else None

    return BeforeValidator(_coerce)


LenientStr = Annotated[Optional[str], _only(str)]
LenientNumber = Annotated[Optional[float], _only(int, float)]
LenientBool = Annotated[Optional[bool], _only(bool)]
LenientScalar = Annotated[Union[str, int, None], _only(str, int)]


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="allow")


class InboundConnected(_Inbound):
    event: Literal["connected"]


class StartMetadata(_Inbound):
    callSid: LenientStr = None
    streamSid: LenientStr = None


class InboundStart(_Inbound):
    event: Literal["start"]
    start: Annotated[Optional[StartMetadata], _only(dict)] = None


class MediaChunk(_Inbound):
    payload: LenientStr = None
    timestamp: LenientScalar = None
    track: LenientStr = None


class InboundMedia(_Inbound):
    event: Literal["media"]
    media: Annotated[Optional[MediaChunk], _only(dict)] = None


class TranscriptPayload(_Inbound):
    # speech drives replies, so it stays strict
    speech: str | None = None
    confidence: LenientNumber = None
    is_final: LenientBool = None


class InboundTranscript(_Inbound):
    event: Literal["transcript"]
    transcript: Annotated[Optional[TranscriptPayload], _only(dict)] = None


class InboundMark(_Inbound):
    event: Literal["mark"]
    mark: Any = None


class InboundStop(_Inbound):
    event: Literal["stop"]
    reason: LenientScalar = None


class UnknownEvent(_Inbound):
    event: str


KnownEvent = Annotated[
    Union[
        InboundConnected,
        InboundStart,
        InboundMedia,
        InboundTranscript,
        InboundMark,
        InboundStop,
    ],
    Field(discriminator="event"),
]

InboundEvent = Union[
    InboundConnected,
    InboundStart,
    InboundMedia,
    InboundTranscript,
    InboundMark,
    InboundStop,
    UnknownEvent,
]

_known_adapter = TypeAdapter(KnownEvent)


@dataclass(frozen=True)
class InboundFrame:
    kind: str
    event: InboundEvent
    payload: dict[str, Any]


def decode_frame(raw: str | bytes) -> InboundFrame:
    """Parse one transport frame.

    Raises MalformedFrameError for anything that is not a JSON object with a
    string ``event`` field, or for a transcript whose ``speech`` is not text.
    Wrongly typed side fields are read as None.
    """

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFrameError("Frame is not valid UTF-8.") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError(f"Frame is not valid JSON: {exc.msg}") from exc

    if not isinstance(payload, dict):
        raise MalformedFrameError("Frame is not a JSON object.")

    kind = payload.get("event")
    if not isinstance(kind, str) or not kind:
        raise MalformedFrameError("Frame has no event discriminator.")

    if kind not in KNOWN_EVENT_KINDS:
        return InboundFrame(kind=kind, event=UnknownEvent.model_validate(payload), payload=payload)

    try:
        event = _known_adapter.validate_python(payload)
    except ValidationError as exc:
        raise MalformedFrameError(
            f"Invalid {kind!r} event: {exc.error_count()} validation error(s)"
        ) from exc
    return InboundFrame(kind=kind, event=event, payload=payload)


class VoiceProfile(BaseModel):
    """Complete voice config block; either all of it is sent or none."""

    model_config = ConfigDict(frozen=True)

    provider: str
    voice_id: str
    stability: float
    similarity: float
    style: float
    speed: float
    audio_format: str


class OutboundConnected(BaseModel):
    event: Literal["connected"] = "connected"


class OutboundSpeak(BaseModel):
    event: Literal["speak"] = "speak"
    text: str


class OutboundVoicedSpeak(OutboundSpeak):
    config: VoiceProfile


class SpeechInstructionBuilder:
    """Builds outbound handshake and speak events."""

    def __init__(self, voice: VoiceProfile | None = None) -> None:
        self._voice = voice

    @classmethod
    def from_settings(cls, settings: Settings) -> SpeechInstructionBuilder:
        if not settings.voice_enabled:
            return cls(voice=None)
        return cls(
            voice=VoiceProfile(
                provider=settings.voice_provider,
                voice_id=settings.voice_id,
                stability=settings.voice_stability,
                similarity=settings.voice_similarity,
                style=settings.voice_style,
                speed=settings.voice_speed,
                audio_format=settings.voice_audio_format,
            )
        )

    @property
    def voice_enabled(self) -> bool:
        return self._voice is not None

    def handshake_ack(self) -> dict[str, Any]:
        return OutboundConnected().model_dump()

    def speak(self, text: str) -> dict[str, Any]:
        if self._voice is None:
            return self._plain_speak(text)
        return self._voiced_speak(text, self._voice)

    @staticmethod
    def _plain_speak(text: str) -> dict[str, Any]:
        return OutboundSpeak(text=text).model_dump()

    @staticmethod
    def _voiced_speak(text: str, voice: VoiceProfile) -> dict[str, Any]:
        return OutboundVoicedSpeak(text=text, config=voice).model_dump()
