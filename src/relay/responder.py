"""Reply generation for recognized caller speech."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from llm.base import BaseLLMClient
from prompts.loader import load_prompt
from relay.errors import ResponseGenerationError

if TYPE_CHECKING:  # pragma: no cover
    from config.settings import Settings
    from relay.session import Turn

LOGGER = logging.getLogger(__name__)


def build_llm_history(
    system_prompt: str, window: Sequence[Turn], user_text: str
) -> list[dict[str, str]]:
    history: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
    history.extend(turn.as_message() for turn in window)
    history.append({"role": "user", "content": user_text})
    return history


class ResponseGenerator:
    """Asks the LLM for the next assistant line.

    Without an LLM client the degraded-service reply is returned and no call is
    made. Upstream errors, timeouts and empty replies raise
    ResponseGenerationError; the session decides what to say instead.
    """

    def __init__(
        self,
        llm: BaseLLMClient | None,
        *,
        system_prompt: str,
        window_turns: int = 6,
        degraded_reply: str,
        temperature: float = 0.7,
        max_tokens: int = 100,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._llm = llm
        self._system_prompt = system_prompt
        self._window_turns = window_turns
        self._degraded_reply = degraded_reply
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, llm: BaseLLMClient | None) -> ResponseGenerator:
        return cls(
            llm,
            system_prompt=load_prompt(settings.system_prompt_file),
            window_turns=settings.history_window_turns,
            degraded_reply=settings.degraded_reply,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout_seconds=settings.llm_timeout_seconds,
        )

    @property
    def available(self) -> bool:
        return self._llm is not None

    async def generate(self, user_text: str, window: Sequence[Turn]) -> str:
        if self._llm is None:
            return self._degraded_reply

        recent = list(window)[-self._window_turns :] if self._window_turns else []
        messages = build_llm_history(self._system_prompt, recent, user_text)
        try:
            reply = await asyncio.wait_for(
                self._llm.chat(
                    messages,
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ResponseGenerationError(
                f"LLM did not answer within {self._timeout:.1f}s"
            ) from exc
        except Exception as exc:
            raise ResponseGenerationError(f"LLM request failed: {exc}") from exc

        reply = (reply or "").strip()
        if not reply:
            raise ResponseGenerationError("LLM returned an empty reply.")
        return reply
