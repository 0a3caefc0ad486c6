"""Aggregated execution metrics and SLA results."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class ExecutionMetrics(BaseModel):
    """Counts and durations for one resource over one window.

    ``average_duration_ms`` is ``None`` when no record carried a duration;
    that is the "no data" result and never a pass for SLA checks.
    """

    execution_count: int = 0
    errors: int = 0
    average_duration_ms: Optional[float] = None
    max_duration_ms: Optional[float] = None
    cold_starts: int = 0

    @property
    def has_data(self) -> bool:
        return self.execution_count > 0

    @property
    def error_rate(self) -> Optional[float]:
        """Percentage of executions that failed."""
        if not self.has_data:
            return None
        return self.errors / self.execution_count * 100

    @property
    def success_rate(self) -> Optional[float]:
        rate = self.error_rate
        return None if rate is None else 100 - rate


class SLAResult(BaseModel):
    meets_sla: bool
    violations: list[str] = Field(default_factory=list)
