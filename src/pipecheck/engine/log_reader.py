"""Execution Log Reader: records and log lines for a resource over a window."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from pipecheck.core.aio import call_provider
from pipecheck.core.protocols import IAwsProvider
from pipecheck.models.records import ExecutionRecord, LogErrorSummary, LogMatchResult, TimeWindow
from pipecheck.models.resources import ResourceHandle, ResourceKind

logger = logging.getLogger(__name__)

READABLE_KINDS = frozenset({ResourceKind.FUNCTION, ResourceKind.STATE_MACHINE})

DEFAULT_ERROR_PATTERNS = ("ERROR", "Exception", "Traceback", "Task timed out")


class ExecutionLogReader:
    """Reads execution records through the provider.

    Matching is plain substring and case-sensitive: provider log formats are
    not ours to parse, so callers wanting case-insensitive checks normalise
    patterns themselves.
    """

    def __init__(self, provider: IAwsProvider) -> None:
        self._provider = provider

    async def read(
        self, handle: ResourceHandle, window_start: datetime, window_end: datetime
    ) -> list[ExecutionRecord]:
        if handle.kind not in READABLE_KINDS:
            raise ValueError(f"{handle} has no execution records; expected a function or state machine")
        window = TimeWindow(start=window_start, end=window_end)
        records = await call_provider(
            self._provider.list_executions_or_logs, handle, window.start, window.end
        )
        records = sorted(
            (r for r in records if window.contains(r.start_time)),
            key=lambda r: r.start_time,
        )
        logger.debug("Read %d record(s) for %s in [%s, %s]", len(records), handle,
                     window.start, window.end)
        return records

    async def contains_any(
        self, handle: ResourceHandle, window: TimeWindow, patterns: Iterable[str]
    ) -> LogMatchResult:
        wanted = [p for p in patterns if p]
        records = await self.read(handle, window.start, window.end)
        matches = [
            line
            for record in records
            for line in record.log_lines()
            if any(p in line for p in wanted)
        ]
        return LogMatchResult(found=bool(matches), matches=matches)

    async def check_errors(
        self,
        handle: ResourceHandle,
        window: TimeWindow,
        patterns: Iterable[str] = DEFAULT_ERROR_PATTERNS,
    ) -> LogErrorSummary:
        result = await self.contains_any(handle, window, patterns)
        return LogErrorSummary(
            has_errors=result.found,
            error_count=len(result.matches),
            lines=result.matches,
        )
