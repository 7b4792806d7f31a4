"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=4000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Session identifier returned by POST /api/sessions",
    )
    timezone: str | None = Field(
        None, max_length=64, description="IANA timezone of the user, e.g. Europe/Lisbon",
    )


class PendingConfirmation(BaseModel):
    tool: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The agent's response message")
    session_id: str = Field(..., description="The session ID for this conversation")
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    pending_confirmations: list[PendingConfirmation] = Field(
        default_factory=list,
        description="Tools waiting for the user's go-ahead via POST /api/ai/confirm",
    )
    model_used: str | None = None
    switched: bool = False
    original_model: str | None = None


class ConfirmRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    tool: str = Field(..., min_length=1, max_length=64)
    parameters: dict[str, Any] = Field(default_factory=dict)


class ConfirmResponse(BaseModel):
    success: bool
    message: str
    result: dict[str, Any] = Field(default_factory=dict)


class WorkingHours(BaseModel):
    start: int = Field(9, ge=0, le=23)
    end: int = Field(17, ge=1, le=24)

    @model_validator(mode="after")
    def _end_after_start(self) -> WorkingHours:
        if self.end <= self.start:
            raise ValueError("working hours must end after they start")
        return self


class ScheduleConstraintsModel(BaseModel):
    """Date range (ISO 8601), event length in minutes and daily working hours."""

    start_date: str = Field(..., alias="startDate")
    end_date: str = Field(..., alias="endDate")
    duration: int = Field(60, ge=5, le=24 * 60, description="Event length in minutes")
    working_hours: WorkingHours = Field(default_factory=WorkingHours, alias="workingHours")

    model_config = {"populate_by_name": True}

    @field_validator("start_date", "end_date")
    @classmethod
    def _iso_date(cls, value: str) -> str:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return value


class SmartScheduleRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    preferences: str = Field("", max_length=1000)
    constraints: ScheduleConstraintsModel
    timezone: str | None = Field(None, max_length=64)


class SmartScheduleResponse(BaseModel):
    success: bool
    selected_time: str | None = None
    reasoning: str = ""
    slots_considered: int = 0
    model_used: str | None = None
    switched: bool = False
    original_model: str | None = None


class SessionCreateRequest(BaseModel):
    """Optional OAuth tokens and timezone for a new session."""

    tokens: dict[str, Any] | None = None
    timezone: str = Field("UTC", max_length=64)


class SessionResponse(BaseModel):
    session_id: str
    timezone: str
    preferred_model: str | None = None
    created_at: str


class ModelStatus(BaseModel):
    available: bool = True
    last_error: str | None = None
    error_count: int = 0


class ModelsResponse(BaseModel):
    primary_model: str
    fallback_models: list[str]
    model_status: dict[str, ModelStatus]


class AIHealthResponse(BaseModel):
    status: str
    message: str
    ai_available: bool
    model: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "vibe-calendar-agent"
