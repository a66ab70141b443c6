"""Pydantic schemas for API request/response consistency and OpenAPI docs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# --- Health ---
class HealthResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = "ok"
    markets: int = 0
    market_cache_refreshed_at: int | None = None
    active_alerts: int = 0


# --- Error (consistent shape for 4xx/5xx) ---
class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable message")
    code: str | None = Field(None, description="Machine-readable code, e.g. duplicate_alert, unknown_market")


# --- Alerts ---
class AlertCreateRequest(BaseModel):
    """Creation payload. Types are checked by the alert validator so bad input maps to invalid_alert."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    market_id: Any = Field(None, description="Gamma market id")
    outcome_index: Any = Field(None, description="Index into the market's outcome list")
    threshold: Any = Field(None, description="Price level, strictly between 0 and 1")
    direction: Any = Field(None, description="'above' or 'below'")
    recipient: str | None = Field(None, description="Durable recipient id (WebSocket id or tg:<chat_id>)")
