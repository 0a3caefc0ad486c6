"""Metrics Aggregator: counts, durations and SLA checks over a window."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Mapping, Sequence

from pipecheck.engine.log_reader import ExecutionLogReader
from pipecheck.models.metrics import ExecutionMetrics, SLAResult
from pipecheck.models.records import ExecutionRecord, TimeWindow, utcnow
from pipecheck.models.resources import ResourceHandle

logger = logging.getLogger(__name__)

# requirement name -> (metric attribute, "max" or "min")
SLA_REQUIREMENTS: dict[str, tuple[str, str]] = {
    "max_average_duration_ms": ("average_duration_ms", "max"),
    "max_duration_ms": ("max_duration_ms", "max"),
    "max_errors": ("errors", "max"),
    "max_error_rate": ("error_rate", "max"),
    "min_success_rate": ("success_rate", "min"),
    "max_cold_starts": ("cold_starts", "max"),
    "min_execution_count": ("execution_count", "min"),
}


def aggregate(records: Sequence[ExecutionRecord]) -> ExecutionMetrics:
    """Fold records into metrics; an empty sequence gives the "no data" result."""
    durations = [r.duration_ms for r in records if r.duration_ms is not None]
    return ExecutionMetrics(
        execution_count=len(records),
        errors=sum(1 for r in records if r.succeeded is False),
        average_duration_ms=sum(durations) / len(durations) if durations else None,
        max_duration_ms=max(durations) if durations else None,
        cold_starts=sum(1 for r in records if r.cold_start),
    )


def evaluate_sla(metrics: ExecutionMetrics, requirements: Mapping[str, float]) -> SLAResult:
    unknown = sorted(set(requirements) - set(SLA_REQUIREMENTS))
    if unknown:
        raise ValueError(f"Unknown SLA requirement(s): {', '.join(unknown)}")

    if not metrics.has_data:
        # every requirement fails without evidence, even max_errors=0
        violations = ["execution_count: observed 0, at least 1 execution required as evidence"]
        violations.extend(
            f"{SLA_REQUIREMENTS[name][0]}: no data, threshold {name}={threshold:g}"
            for name, threshold in requirements.items()
        )
        return SLAResult(meets_sla=False, violations=violations)

    violations: list[str] = []
    for name, threshold in requirements.items():
        attr, bound = SLA_REQUIREMENTS[name]
        observed = getattr(metrics, attr)
        if observed is None:
            violations.append(f"{attr}: no data, threshold {name}={threshold}")
        elif bound == "max" and observed > threshold:
            violations.append(f"{attr}: observed {observed:g} exceeds {name}={threshold:g}")
        elif bound == "min" and observed < threshold:
            violations.append(f"{attr}: observed {observed:g} below {name}={threshold:g}")

    return SLAResult(meets_sla=not violations, violations=violations)


class MetricsAggregator:
    def __init__(self, reader: ExecutionLogReader,
                 now: Callable[[], datetime] = utcnow) -> None:
        self._reader = reader
        self._now = now

    async def count(self, handle: ResourceHandle, window: TimeWindow) -> int:
        return len(await self._reader.read(handle, window.start, window.end))

    async def count_since(self, handle: ResourceHandle, last_n_minutes: float) -> int:
        return await self.count(handle, TimeWindow.last(minutes=last_n_minutes, now=self._now()))

    async def metrics(self, handle: ResourceHandle, window: TimeWindow) -> ExecutionMetrics:
        records = await self._reader.read(handle, window.start, window.end)
        result = aggregate(records)
        logger.debug("Metrics for %s: %s", handle, result)
        return result

    async def verify_sla(
        self, handle: ResourceHandle, window: TimeWindow, requirements: Mapping[str, float]
    ) -> SLAResult:
        result = evaluate_sla(await self.metrics(handle, window), requirements)
        if not result.meets_sla:
            logger.info("SLA not met for %s: %s", handle, "; ".join(result.violations))
        return result
