"""MarketSummary, MarketDetail, Outcome - market projections from the Gamma API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class MarketSummary(BaseModel):
    """Cached projection of an active market."""

    model_config = {"frozen": True}

    id: str
    question: str = ""


class Outcome(BaseModel):
    """Single outcome (e.g. Yes/No) of a market at read time."""

    id: int
    label: str
    price: float | None = Field(None, description="Probability/price, None when the source sent none")


class MarketDetail(BaseModel):
    """Live read of one market with its outcome prices. Never cached."""

    id: str
    question: str = ""
    outcomes: list[Outcome] = Field(default_factory=list)

    def price_at(self, outcome_index: int) -> float | None:
        if 0 <= outcome_index < len(self.outcomes):
            return self.outcomes[outcome_index].price
        return None
