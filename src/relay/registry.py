"""Process-wide view of live call sessions, for health and debug endpoints."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from relay.session import CallSession


@dataclass(frozen=True)
class SessionSummary:
    connection_id: int
    session_id: str
    phase: str
    has_greeted: bool
    turns: int
    is_twilio: bool
    connected_at: datetime


class SessionRegistry:
    """In-memory registry of active sessions.

    Note: This is a single-process registry. Sessions never read it; it only
    backs observability endpoints.
    """

    def __init__(self) -> None:
        self._sessions: dict[int, CallSession] = {}
        self._ids = itertools.count(1)

    def register(self, session: CallSession) -> int:
        if session.connection_id is None:
            session.connection_id = next(self._ids)
        self._sessions[session.connection_id] = session
        return session.connection_id

    def unregister(self, session: CallSession) -> bool:
        if session.connection_id is None:
            return False
        return self._sessions.pop(session.connection_id, None) is not None

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def snapshot(self) -> list[SessionSummary]:
        return [
            SessionSummary(
                connection_id=connection_id,
                session_id=session.session_id,
                phase=session.phase.value,
                has_greeted=session.has_greeted,
                turns=len(session.history),
                is_twilio=bool(session.peer and session.peer.is_twilio),
                connected_at=session.connected_at,
            )
            for connection_id, session in sorted(self._sessions.items())
        ]

    def clear(self) -> None:
        """Drop every entry; used to reset state between test runs."""

        self._sessions.clear()


GLOBAL_SESSION_REGISTRY = SessionRegistry()
