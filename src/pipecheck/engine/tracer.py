"""Correlation Tracer: follow one artifact through the pipeline by correlation id.

An id is attached to an artifact before the triggering action is dispatched
(the upload carries it as ``correlation-id`` object metadata). Each stage is
then searched for records whose payload mentions the id:

* upload: the attached objects, via their stored metadata
* invocation: function execution records (log payloads)
* state_machine_execution: execution input and history events
* message_delivery: queue messages, peeked without being consumed

Stages are checked in the caller's causal order. A stage observed while an
earlier one is missing, or observed before it beyond the clock-skew
tolerance, raises ``OutOfOrderTraceError``.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from pipecheck.core.aio import call_provider
from pipecheck.core.exceptions import OutOfOrderTraceError, PreconditionNotSetError
from pipecheck.core.protocols import IAwsProvider
from pipecheck.engine.log_reader import ExecutionLogReader
from pipecheck.models.records import TimeWindow, utcnow
from pipecheck.models.resources import ResourceHandle, ResourceKind, metadata_value
from pipecheck.models.trace import (
    ArtifactRef,
    PartialTrace,
    Trace,
    TraceEvent,
    TraceResult,
    TraceStage,
)

logger = logging.getLogger(__name__)

CORRELATION_METADATA_KEY = "correlation-id"

STAGE_KINDS: dict[TraceStage, ResourceKind] = {
    TraceStage.UPLOAD: ResourceKind.BUCKET,
    TraceStage.INVOCATION: ResourceKind.FUNCTION,
    TraceStage.STATE_MACHINE_EXECUTION: ResourceKind.STATE_MACHINE,
    TraceStage.MESSAGE_DELIVERY: ResourceKind.QUEUE,
}


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def _outcome(succeeded: Optional[bool]) -> str:
    if succeeded is None:
        return "running"
    return "succeeded" if succeeded else "failed"


class CorrelationTracer:
    """Scenario-scoped registry of correlation ids and their traces."""

    def __init__(
        self,
        provider: IAwsProvider,
        reader: ExecutionLogReader,
        *,
        lookback_seconds: float = 300.0,
        clock_skew_seconds: float = 5.0,
        match_artifact_key: bool = False,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._provider = provider
        self._reader = reader
        self._lookback = lookback_seconds
        self._skew = timedelta(seconds=clock_skew_seconds)
        self._match_key = match_artifact_key
        self._now = now
        self._artifacts: dict[str, ArtifactRef] = {}
        self._stage_resources: dict[TraceStage, list[ResourceHandle]] = {}
        self._seen: dict[str, dict[tuple[TraceStage, str], TraceEvent]] = {}
        self._histories: dict[str, str] = {}

    # ---- registration ----

    def attach(self, artifact: ArtifactRef, correlation_id: str) -> None:
        """Record that ``artifact`` carries ``correlation_id``; call before dispatching."""
        existing = self._artifacts.get(correlation_id)
        if existing is not None and existing != artifact:
            raise ValueError(
                f"Correlation id {correlation_id} is already attached to {existing.key!r}"
            )
        self._artifacts[correlation_id] = artifact
        logger.info("Attached correlation id %s to %s/%s", correlation_id,
                    artifact.bucket.name, artifact.key)

    def artifact_for(self, correlation_id: str) -> Optional[ArtifactRef]:
        return self._artifacts.get(correlation_id)

    def correlation_ids(self) -> list[str]:
        return list(self._artifacts)

    def bind_stage(self, stage: TraceStage | str, handle: ResourceHandle) -> None:
        """Name a resource to search when looking for ``stage`` events."""
        stage = TraceStage(stage)
        if handle.kind != STAGE_KINDS[stage]:
            raise ValueError(f"{handle} cannot serve stage {stage}; expected a {STAGE_KINDS[stage]}")
        handles = self._stage_resources.setdefault(stage, [])
        if handle not in handles:
            handles.append(handle)

    def clear(self) -> None:
        self._artifacts.clear()
        self._stage_resources.clear()
        self._seen.clear()
        self._histories.clear()

    # ---- tracing ----

    async def trace(
        self,
        correlation_id: str,
        expected_stages: Sequence[TraceStage | str],
        lookback_seconds: Optional[float] = None,
    ) -> TraceResult:
        stages = [TraceStage(s) for s in expected_stages]
        if not stages:
            raise ValueError("expected_stages must name at least one stage")
        if len(set(stages)) != len(stages):
            raise ValueError(f"expected_stages contains duplicates: {stages}")

        window = TimeWindow.last(
            seconds=self._lookback if lookback_seconds is None else lookback_seconds,
            now=self._now(),
        )
        seen = self._seen.setdefault(correlation_id, {})
        for stage in stages:
            for event in await self._find(stage, correlation_id, window):
                seen[(stage, event.reference)] = event

        by_stage = {
            stage: sorted((e for (s, _), e in seen.items() if s == stage), key=lambda e: e.timestamp)
            for stage in stages
        }
        self._check_order(correlation_id, stages, by_stage)

        events = sorted(
            (e for stage in stages for e in by_stage[stage]),
            key=lambda e: (e.timestamp, e.stage.order),
        )
        missing = [stage for stage in stages if not by_stage[stage]]
        if missing:
            logger.debug("Trace %s incomplete, missing %s", correlation_id, missing)
            return PartialTrace(correlation_id=correlation_id, events=events, missing_stages=missing)
        return Trace(correlation_id=correlation_id, events=events)

    def _check_order(
        self,
        correlation_id: str,
        stages: list[TraceStage],
        by_stage: dict[TraceStage, list[TraceEvent]],
    ) -> None:
        previous: Optional[TraceStage] = None
        for index, stage in enumerate(stages):
            if not by_stage[stage]:
                later = next((s for s in stages[index + 1:] if by_stage[s]), None)
                if later is not None:
                    error = OutOfOrderTraceError(
                        correlation_id, later, stage,
                        "observed without its preceding stage (pipeline fault or lookback too short)",
                    )
                    logger.error("%s", error)
                    raise error
                return
            if previous is not None:
                earliest, before = by_stage[stage][0].timestamp, by_stage[previous][0].timestamp
                if earliest < before - self._skew:
                    error = OutOfOrderTraceError(
                        correlation_id, stage, previous,
                        f"first event at {earliest.isoformat()} precedes {before.isoformat()} "
                        f"by more than {self._skew.total_seconds():g}s",
                    )
                    logger.error("%s", error)
                    raise error
            previous = stage

    def _tokens(self, correlation_id: str) -> list[str]:
        tokens = [correlation_id]
        artifact = self._artifacts.get(correlation_id)
        if self._match_key and artifact is not None:
            tokens.append(artifact.key)
        return tokens

    async def _find(self, stage: TraceStage, correlation_id: str, window: TimeWindow) -> list[TraceEvent]:
        if stage == TraceStage.UPLOAD:
            return await self._find_upload(correlation_id)
        handles = self._stage_resources.get(stage)
        if not handles:
            raise PreconditionNotSetError(
                f"{stage} resource", f"call bind_stage({str(stage)!r}, <{STAGE_KINDS[stage]} handle>) before tracing"
            )
        tokens = self._tokens(correlation_id)
        events: list[TraceEvent] = []
        for handle in handles:
            if stage == TraceStage.INVOCATION:
                events.extend(await self._find_invocations(handle, correlation_id, tokens, window))
            elif stage == TraceStage.STATE_MACHINE_EXECUTION:
                events.extend(await self._find_executions(handle, correlation_id, tokens, window))
            else:
                events.extend(await self._find_messages(handle, correlation_id, tokens))
        return events

    async def _find_upload(self, correlation_id: str) -> list[TraceEvent]:
        artifact = self._artifacts.get(correlation_id)
        if artifact is None:
            return []
        stored = await call_provider(self._provider.get_object, artifact.bucket, artifact.key)
        if stored is None or metadata_value(stored.metadata, CORRELATION_METADATA_KEY) != correlation_id:
            return []
        return [TraceEvent(
            stage=TraceStage.UPLOAD,
            correlation_id=correlation_id,
            timestamp=stored.last_modified,
            resource=artifact.bucket,
            outcome="uploaded",
            reference=artifact.key,
        )]

    async def _find_invocations(
        self, handle: ResourceHandle, correlation_id: str, tokens: list[str], window: TimeWindow
    ) -> list[TraceEvent]:
        records = await self._reader.read(handle, window.start, window.end)
        return [
            TraceEvent(
                stage=TraceStage.INVOCATION,
                correlation_id=correlation_id,
                timestamp=record.start_time,
                resource=handle,
                outcome=_outcome(record.succeeded),
                reference=record.request_id or record.start_time.isoformat(),
            )
            for record in records
            if any(token in record.raw_payload for token in tokens)
        ]

    async def _find_executions(
        self, handle: ResourceHandle, correlation_id: str, tokens: list[str], window: TimeWindow
    ) -> list[TraceEvent]:
        executions = await call_provider(self._provider.list_state_machine_executions, handle)
        events: list[TraceEvent] = []
        for execution in executions:
            if not window.contains(execution.start_date):
                continue
            payload = execution.input or ""
            if not any(token in payload for token in tokens):
                payload = await self._history_text(execution.execution_arn, execution.terminal)
            if any(token in payload for token in tokens):
                events.append(TraceEvent(
                    stage=TraceStage.STATE_MACHINE_EXECUTION,
                    correlation_id=correlation_id,
                    timestamp=execution.start_date,
                    resource=handle,
                    outcome=execution.status,
                    reference=execution.execution_arn,
                ))
        return events

    async def _history_text(self, execution_arn: str, terminal: bool) -> str:
        cached = self._histories.get(execution_arn)
        if cached is not None:
            return cached
        history = await call_provider(self._provider.get_execution_history, execution_arn)
        text = json.dumps(history, default=str)
        if terminal:
            self._histories[execution_arn] = text
        return text

    async def _find_messages(
        self, handle: ResourceHandle, correlation_id: str, tokens: list[str]
    ) -> list[TraceEvent]:
        messages = await call_provider(self._provider.peek_messages, handle)
        events: list[TraceEvent] = []
        for message in messages:
            haystack = [message.body, *message.attributes.values()]
            if any(token in text for token in tokens for text in haystack):
                events.append(TraceEvent(
                    stage=TraceStage.MESSAGE_DELIVERY,
                    correlation_id=correlation_id,
                    timestamp=message.sent_at or self._now(),
                    resource=handle,
                    outcome="delivered",
                    reference=message.message_id,
                ))
        return events
