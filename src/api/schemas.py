"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ApiFlags(BaseModel):
    openai: bool = Field(description="Whether reply generation has upstream credentials.")
    elevenlabs: bool = Field(description="Whether speak events carry the premium voice config.")


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime
    connections: int
    port: int
    apis: ApiFlags


class StatusResponse(BaseModel):
    status: str = "ok"
    connections: int
    elevenlabs: bool
    openai: bool
    timestamp: datetime
    uptime_seconds: float


class SessionInfo(BaseModel):
    connection_id: int
    session_id: str
    phase: str
    has_greeted: bool
    turns: int
    is_twilio: bool
    connected_at: datetime


class DebugResponse(BaseModel):
    connections: list[SessionInfo]
    total_connections: int
    timestamp: datetime
    environment: dict[str, str | int]
