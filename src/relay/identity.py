"""Call identifier resolution and peer classification.

A connection starts with a ``TEMP_<millis>`` placeholder. The real call SID may
arrive in the connection URL or in any later event; the first source that
supplies one wins and is never replaced.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

PLACEHOLDER_PREFIX = "TEMP_"


@dataclass(frozen=True)
class IdentityResolution:
    previous: str
    value: str
    source: str


@dataclass(frozen=True)
class PeerInfo:
    user_agent: str
    origin: str | None
    is_twilio: bool


def new_placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{int(time.time() * 1000)}"


def is_placeholder(session_id: str) -> bool:
    return session_id.startswith(PLACEHOLDER_PREFIX)


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or is_placeholder(value):
        return None
    return value


def _nested(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


def _from_query(query: Mapping[str, Any] | None, event: Mapping[str, Any] | None) -> str | None:
    if not query:
        return None
    return _clean(query.get("callSid"))


def _from_start_event(query: Mapping[str, Any] | None, event: Mapping[str, Any] | None) -> str | None:
    if not event or event.get("event") != "start":
        return None
    return _clean(_nested(event, "start").get("callSid"))


def _from_top_level(query: Mapping[str, Any] | None, event: Mapping[str, Any] | None) -> str | None:
    if not event:
        return None
    return _clean(event.get("callSid"))


def _from_call_object(query: Mapping[str, Any] | None, event: Mapping[str, Any] | None) -> str | None:
    if not event:
        return None
    call = _nested(event, "call")
    return _clean(call.get("callSid")) or _clean(call.get("sid"))


# Ordered by precedence; the first hit wins.
IDENTITY_SOURCES: tuple[tuple[str, Callable[..., str | None]], ...] = (
    ("url_query", _from_query),
    ("start_event", _from_start_event),
    ("event_field", _from_top_level),
    ("call_object", _from_call_object),
)


def candidate_ids(
    *,
    query: Mapping[str, Any] | None = None,
    event: Mapping[str, Any] | None = None,
) -> Iterator[tuple[str, str]]:
    for source, extract in IDENTITY_SOURCES:
        value = extract(query, event)
        if value:
            yield source, value


def resolve_session_id(
    current: str,
    *,
    query: Mapping[str, Any] | None = None,
    event: Mapping[str, Any] | None = None,
) -> IdentityResolution | None:
    """Return the upgrade for ``current``, or None when nothing changes.

    Only a placeholder can be upgraded; a resolved identifier is final.
    """

    if not is_placeholder(current):
        return None
    for source, value in candidate_ids(query=query, event=event):
        return IdentityResolution(previous=current, value=value, source=source)
    return None


def classify_peer(headers: Mapping[str, str]) -> PeerInfo:
    """Advisory origin check, used for logging only."""

    user_agent = headers.get("user-agent") or ""
    return PeerInfo(
        user_agent=user_agent,
        origin=headers.get("origin"),
        is_twilio="Twilio" in user_agent,
    )
