"""Factory returning the configured LLM client implementation."""

from __future__ import annotations

import logging

from config.settings import get_settings
from llm.base import BaseLLMClient
from llm.openai_client import OpenAIClient
from llm.vllm_client import VLLMClient

LOGGER = logging.getLogger(__name__)


def build_llm_client() -> BaseLLMClient | None:
    """Instantiate the configured LLM connector.

    Returns None when the provider has no credentials; callers then answer with
    the degraded-service reply instead of calling upstream.
    """

    settings = get_settings()
    if settings.llm_provider not in {"openai", "self_hosted_vllm"}:
        raise ValueError(f"Unsupported llm_provider: {settings.llm_provider}")
    if not settings.llm_configured:
        LOGGER.warning("LLM provider %s is not configured; replies will be degraded", settings.llm_provider)
        return None
    if settings.llm_provider == "self_hosted_vllm":
        return VLLMClient()
    return OpenAIClient()
