"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    # LLM connectivity
    llm_provider: Literal["openai", "self_hosted_vllm"] = Field(default="openai")
    llm_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("llm_api_key", "openai_api_key"),
    )
    llm_endpoint: str | None = Field(
        default=None,
        description="Base URL of an OpenAI-compatible endpoint (required for self_hosted_vllm).",
    )
    llm_model: str = Field(default="gpt-4o-mini")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=100, gt=0)
    llm_timeout_seconds: float = Field(default=15.0, gt=0)

    # Premium voice (ElevenLabs through ConversationRelay)
    elevenlabs_api_key: SecretStr | None = Field(
        default=None,
        description="Presence alone switches speak events to the full voice config block.",
    )
    voice_provider: str = Field(default="elevenlabs")
    voice_id: str = Field(default="FGY2WhTYpPnrIDTdsKH5")
    voice_stability: float = Field(default=0.35, ge=0.0, le=1.0)
    voice_similarity: float = Field(default=0.75, ge=0.0, le=1.0)
    voice_style: float = Field(default=0.4, ge=0.0, le=1.0)
    voice_speed: float = Field(default=0.95, gt=0.0)
    voice_audio_format: str = Field(default="ulaw_8000")

    # Conversation content
    greeting_text: str = Field(
        default="Olá! Aqui é a Laura da Voxemy. Como posso ajudar você hoje?"
    )
    fallback_reply: str = Field(default="Desculpe, não entendi bem. Pode repetir?")
    degraded_reply: str = Field(default="Desculpe, estou com problemas técnicos no momento.")
    system_prompt_file: str = Field(default="system_prompt.txt")

    # Session tuning
    keepalive_interval_seconds: float = Field(default=25.0, gt=0)
    history_window_turns: int = Field(default=6, ge=0)
    min_transcript_chars: int = Field(
        default=2,
        ge=0,
        description="Transcripts whose trimmed length is at or below this are treated as noise.",
    )
    media_log_sample_rate: float = Field(default=0.02, ge=0.0, le=1.0)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("elevenlabs_api_key")
    @classmethod
    def blank_secret_is_absent(cls, value: SecretStr | None) -> SecretStr | None:
        if value is not None and not value.get_secret_value().strip():
            return None
        return value

    @property
    def voice_enabled(self) -> bool:
        return self.elevenlabs_api_key is not None

    @property
    def llm_configured(self) -> bool:
        if self.llm_provider == "self_hosted_vllm":
            return bool(self.llm_endpoint)
        return bool(self.llm_api_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
