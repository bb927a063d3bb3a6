"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from config.settings import Settings, get_settings
from relay.registry import GLOBAL_SESSION_REGISTRY, SessionRegistry

if TYPE_CHECKING:  # pragma: no cover
    from relay.responder import ResponseGenerator


@lru_cache(maxsize=1)
def _responder_factory() -> ResponseGenerator:
    # Lazy import so the OpenAI client is only built when a call arrives.
    from llm.factory import build_llm_client
    from relay.responder import ResponseGenerator

    return ResponseGenerator.from_settings(get_settings(), build_llm_client())


def get_responder() -> ResponseGenerator:
    return _responder_factory()


def get_app_settings() -> Settings:
    return get_settings()


def get_registry() -> SessionRegistry:
    return GLOBAL_SESSION_REGISTRY
