"""Schema and domain checks for candidate alerts. Market existence is checked elsewhere."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from polyalert.errors import InvalidAlert
from polyalert.models import DIRECTIONS, Alert

# Wire payloads use camelCase; stored records and models use snake_case.
_FIELD_ALIASES = {
    "id": ("id",),
    "market_id": ("market_id", "marketId"),
    "outcome_index": ("outcome_index", "outcomeIndex"),
    "threshold": ("threshold",),
    "direction": ("direction",),
}


@dataclass(frozen=True, slots=True)
class ValidationResult:
    ok: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.ok


def _get(candidate: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES[name]:
        if key in candidate:
            return candidate[key]
    return None


def _as_mapping(candidate: Alert | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(candidate, Alert):
        return candidate.model_dump()
    return candidate


def validate(candidate: Alert | Mapping[str, Any]) -> ValidationResult:
    """Check the candidate's shape. Returns ok or the first failing reason."""
    data = _as_mapping(candidate)

    alert_id = _get(data, "id")
    if not isinstance(alert_id, str) or not alert_id:
        return ValidationResult(False, "id must be a non-empty string")

    market_id = _get(data, "market_id")
    if not isinstance(market_id, str) or not market_id.strip():
        return ValidationResult(False, "marketId must be a non-empty string")

    outcome_index = _get(data, "outcome_index")
    if isinstance(outcome_index, bool) or not isinstance(outcome_index, int) or outcome_index < 0:
        return ValidationResult(False, "outcomeIndex must be a non-negative integer")

    direction = _get(data, "direction")
    if direction not in DIRECTIONS:
        return ValidationResult(False, "direction must be 'above' or 'below'")

    threshold = _get(data, "threshold")
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        return ValidationResult(False, "threshold must be a number")
    if not math.isfinite(threshold) or not 0 < threshold < 1:
        return ValidationResult(False, "threshold must be strictly between 0 and 1")

    return ValidationResult(True)


def ensure_valid(candidate: Alert | Mapping[str, Any]) -> None:
    """Raise InvalidAlert when validate() fails."""
    result = validate(candidate)
    if not result.ok:
        raise InvalidAlert(result.reason or "Invalid alert payload.")
