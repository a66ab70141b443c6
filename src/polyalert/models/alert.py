"""Alert and TriggerEvent - the watch conditions and what fires when they hit."""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Direction = Literal["above", "below"]
AlertStatus = Literal["active", "completed"]

DIRECTIONS: tuple[str, ...] = ("above", "below")


def now_ms() -> int:
    return int(time.time() * 1000)


class Alert(BaseModel):
    """Price threshold on one market outcome. Status is explicit; completed is terminal."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    market_id: str
    outcome_index: int
    threshold: float
    direction: Direction
    recipient: str | None = Field(None, description="Durable recipient id, resolved to a channel at dispatch")
    status: AlertStatus = "active"
    created_at: int = Field(default_factory=now_ms)  # ms epoch
    completed_at: int | None = None  # ms epoch
    completed_price: float | None = None

    @property
    def dedup_key(self) -> tuple[str, int, float, str]:
        return (self.market_id, self.outcome_index, self.threshold, self.direction)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def complete(self, price: float, at: int | None = None) -> Alert:
        """Return the completed copy of this alert, stamped with the observed price."""
        if not self.is_active:
            raise ValueError(f"alert {self.id} is already completed")
        return self.model_copy(
            update={
                "status": "completed",
                "completed_at": at if at is not None else now_ms(),
                "completed_price": price,
            }
        )


def is_hit(direction: str, price: float, threshold: float) -> bool:
    """Inclusive at the threshold: below fires on price <= threshold, above on price >= threshold."""
    if direction == "below":
        return price <= threshold
    return price >= threshold


class TriggerEvent(BaseModel):
    """Payload handed to notification dispatchers when an alert completes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    alert_id: str
    market_id: str
    outcome_index: int
    price: float
    threshold: float
    direction: Direction
    question: str | None = None
    recipient: str | None = None
    triggered_at: int = Field(default_factory=now_ms)

    @classmethod
    def from_alert(cls, alert: Alert, price: float, question: str | None = None) -> TriggerEvent:
        return cls(
            alert_id=alert.id,
            market_id=alert.market_id,
            outcome_index=alert.outcome_index,
            price=price,
            threshold=alert.threshold,
            direction=alert.direction,
            question=question,
            recipient=alert.recipient,
            triggered_at=alert.completed_at or now_ms(),
        )
