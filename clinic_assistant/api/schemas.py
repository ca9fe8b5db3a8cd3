"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from clinic_assistant.models import AppointmentDraft


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=2000, description="The patient's message")
    session_id: str | None = Field(
        None, max_length=100, description="Client session identifier, used only for log correlation",
    )


class ChatResponse(BaseModel):
    message: str = Field(..., description="The assistant's reply")
    intent: str
    treatments: list[dict[str, Any]] | None = None
    booking_cta: bool = False
    quote_cta: str | None = None


class AppointmentRequest(BaseModel):
    """Booking submitted from the appointment form."""

    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)
    phone: str = Field(..., min_length=10, max_length=20)
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    service: str = Field(..., min_length=1, max_length=200)
    message: str | None = Field(None, max_length=1000)
    clinic_location_id: int = 1

    def to_draft(self) -> AppointmentDraft:
        return AppointmentDraft(**self.model_dump())


class BookingResponse(BaseModel):
    success: bool
    message: str


class LLMConfigRequest(BaseModel):
    """Partial LLM settings update; omitted fields keep their current value."""

    provider: Literal["mistral", "openai", "anthropic"] | None = None
    api_key: str | None = Field(None, max_length=300)
    model: str | None = Field(None, max_length=100)
    reset: bool = False


class LLMConfigResponse(BaseModel):
    provider: str
    model: str
    has_api_key: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "clinic-assistant"
    checks: dict[str, bool] = Field(default_factory=dict)


class WebPage(BaseModel):
    url: str
    title: str
    content: str
    summary: str


class SearchResponse(BaseModel):
    query: str
    results: list[WebPage] = Field(default_factory=list)
