"""Poll policy and backoff functions."""

from __future__ import annotations

from typing import Any, Callable, Optional

from pydantic import BaseModel, model_validator

Backoff = Callable[[int, float], float]


def fixed_backoff(attempt: int, interval: float) -> float:
    """Sleep the base interval after every attempt."""
    return interval


def exponential_backoff(multiplier: float = 2.0, max_interval: float = 10.0) -> Backoff:
    """Return a backoff growing ``interval * multiplier ** (attempt - 1)``, capped."""

    def _backoff(attempt: int, interval: float) -> float:
        return min(interval * multiplier ** max(attempt - 1, 0), max_interval)

    return _backoff


class PollPolicy(BaseModel):
    """Governs one Condition Poller wait."""

    model_config = {"frozen": True}

    timeout_seconds: float
    interval_seconds: float
    max_attempts: Optional[int] = None
    backoff: Backoff = fixed_backoff

    @model_validator(mode="after")
    def _check_bounds(self) -> "PollPolicy":
        if self.timeout_seconds <= 0 or self.interval_seconds <= 0:
            raise ValueError("timeout_seconds and interval_seconds must be > 0")
        if self.timeout_seconds < self.interval_seconds:
            raise ValueError("timeout_seconds must be >= interval_seconds")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        return self

    def with_timeout(self, timeout_seconds: float) -> "PollPolicy":
        return PollPolicy(
            timeout_seconds=timeout_seconds,
            interval_seconds=min(self.interval_seconds, timeout_seconds),
            max_attempts=self.max_attempts,
            backoff=self.backoff,
        )

    def describe(self) -> dict[str, Any]:
        return {
            "timeout_seconds": self.timeout_seconds,
            "interval_seconds": self.interval_seconds,
            "max_attempts": self.max_attempts,
        }


class Observation(BaseModel):
    """What a condition saw on one poll tick."""

    satisfied: bool
    detail: Any = None

    def __bool__(self) -> bool:
        return self.satisfied
