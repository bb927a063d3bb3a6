"""Domain-specific exceptions for the call relay.

These are connection-local: handlers recover from them and keep the process alive.
"""

from __future__ import annotations


class RelayError(Exception):
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MalformedFrameError(RelayError):
    default_detail = "Inbound frame is not a valid event record."


class ResponseGenerationError(RelayError):
    default_detail = "Response generation failed."
