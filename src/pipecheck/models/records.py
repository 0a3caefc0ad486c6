"""Execution records, time windows and log match results."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from pipecheck.models.resources import ResourceHandle


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeWindow(BaseModel):
    """Closed interval ``[start, end]`` of wall-clock time."""

    model_config = {"frozen": True}

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.start > self.end:
            raise ValueError(f"window start {self.start} is after end {self.end}")
        return self

    @classmethod
    def last(cls, *, minutes: float = 0, seconds: float = 0,
             now: Optional[datetime] = None) -> "TimeWindow":
        end = now or utcnow()
        return cls(start=end - timedelta(minutes=minutes, seconds=seconds), end=end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class ExecutionRecord(BaseModel):
    """One function invocation or state machine execution."""

    model_config = {"frozen": True}

    resource: ResourceHandle
    request_id: str = ""
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    succeeded: Optional[bool] = None  # None while still running
    error_detail: Optional[str] = None
    cold_start: bool = False
    memory_used_mb: Optional[int] = None
    raw_payload: str = ""

    def log_lines(self) -> list[str]:
        return [line for line in self.raw_payload.splitlines() if line.strip()]


class LogMatchResult(BaseModel):
    """Outcome of a "contains any of" log check."""

    found: bool
    matches: list[str] = Field(default_factory=list)


class LogErrorSummary(BaseModel):
    """Error lines found in a resource's logs over a window."""

    has_errors: bool
    error_count: int = 0
    lines: list[str] = Field(default_factory=list)
