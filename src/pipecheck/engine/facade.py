"""Verification Facade: the named checks step definitions call.

Polled checks raise ``PollTimeoutError`` naming the resource, the policy and
the last observed state; one-shot checks raise ``VerificationFailedError``.
Typed provider errors (``NotFoundError``, ``AccessError``) and trace anomalies
(``OutOfOrderTraceError``) pass through unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from pipecheck.core.aio import call_provider
from pipecheck.core.config import AppSettings
from pipecheck.core.exceptions import VerificationFailedError
from pipecheck.core.protocols import Condition, IAwsProvider
from pipecheck.engine.log_reader import ExecutionLogReader
from pipecheck.engine.metrics import MetricsAggregator
from pipecheck.engine.poller import ConditionPoller
from pipecheck.engine.state_machines import StateMachineInspector
from pipecheck.engine.tracer import CORRELATION_METADATA_KEY, CorrelationTracer
from pipecheck.models.metrics import SLAResult
from pipecheck.models.policy import Observation, PollPolicy
from pipecheck.models.records import LogErrorSummary, LogMatchResult, TimeWindow, utcnow
from pipecheck.models.resources import QueueMessage, ResourceHandle, StateMachineExecution
from pipecheck.models.trace import PartialTrace, Trace, TraceStage

logger = logging.getLogger(__name__)


def _mentions(message: QueueMessage, correlation_id: str) -> bool:
    if correlation_id in message.body:
        return True
    return message.attributes.get(CORRELATION_METADATA_KEY) == correlation_id


class VerificationFacade:
    """Composes the engine components; holds no scenario state of its own."""

    def __init__(
        self,
        *,
        settings: AppSettings,
        provider: IAwsProvider,
        poller: ConditionPoller,
        reader: ExecutionLogReader,
        aggregator: MetricsAggregator,
        tracer: CorrelationTracer,
        inspector: StateMachineInspector,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._poller = poller
        self._reader = reader
        self._aggregator = aggregator
        self._tracer = tracer
        self._inspector = inspector
        self._now = now
        self._default_policy = settings.poll.to_policy()

    @property
    def default_policy(self) -> PollPolicy:
        return self._default_policy

    def _window(self, seconds: float) -> TimeWindow:
        return TimeWindow.last(seconds=seconds, now=self._now())

    async def _poll(self, condition: Condition, policy: Optional[PollPolicy], description: str) -> Observation:
        return await self._poller.wait_for(condition, policy or self._default_policy, description)

    # ---- invocation counts ----

    async def _wait_for_activity(
        self,
        handle: ResourceHandle,
        within_seconds: Optional[float],
        policy: Optional[PollPolicy],
        description: str,
    ) -> int:
        recent = self._settings.window.recent_seconds if within_seconds is None else within_seconds
        observed = 0

        async def active() -> Observation:
            nonlocal observed
            observed = await self._aggregator.count(handle, self._window(recent))
            return Observation(
                satisfied=observed > 0,
                detail=f"{observed} execution(s) of {handle} in the last {recent:g}s",
            )

        await self._poll(active, policy, description)
        return observed

    async def was_invoked(
        self,
        function: ResourceHandle,
        within_seconds: Optional[float] = None,
        policy: Optional[PollPolicy] = None,
    ) -> int:
        """Wait until ``function`` shows at least one execution in the recent window."""
        return await self._wait_for_activity(function, within_seconds, policy, f"{function} to be invoked")

    async def state_machine_executed(
        self,
        state_machine: ResourceHandle,
        within_seconds: Optional[float] = None,
        policy: Optional[PollPolicy] = None,
    ) -> int:
        return await self._wait_for_activity(
            state_machine, within_seconds, policy, f"{state_machine} to be executed"
        )

    async def execution_for(
        self,
        state_machine: ResourceHandle,
        correlation_id: str,
        policy: Optional[PollPolicy] = None,
    ) -> StateMachineExecution:
        """Wait for the execution of ``state_machine`` that carries ``correlation_id``."""
        found: list[StateMachineExecution] = []

        async def started() -> Observation:
            execution = await self._inspector.execution_for(state_machine, correlation_id)
            if execution is not None:
                found.append(execution)
            return Observation(
                satisfied=execution is not None,
                detail=f"no execution of {state_machine} mentions {correlation_id}",
            )

        await self._poll(started, policy, f"{state_machine} to execute for correlation id {correlation_id}")
        return found[0]

    async def invoked_at_least(
        self,
        handle: ResourceHandle,
        times: int,
        within_minutes: float,
        policy: Optional[PollPolicy] = None,
    ) -> int:
        """Wait until ``handle`` has ``times`` executions in the last ``within_minutes``.

        Without an explicit policy the timeout is the window length, capped by
        ``poll.max_timeout_seconds``.
        """
        if policy is None:
            timeout = min(within_minutes * 60, self._settings.poll.max_timeout_seconds)
            policy = self._default_policy.with_timeout(timeout)
        observed = 0

        async def enough() -> Observation:
            nonlocal observed
            observed = await self._aggregator.count_since(handle, within_minutes)
            return Observation(
                satisfied=observed >= times,
                detail=f"observed count {observed} vs required {times} for {handle} "
                       f"within {within_minutes:g} minute(s)",
            )

        await self._poll(enough, policy, f"{handle} to be invoked {times} times within {within_minutes:g} minutes")
        return observed

    # ---- storage and queues ----

    async def file_exists(
        self, bucket: ResourceHandle, key: str, policy: Optional[PollPolicy] = None
    ) -> None:
        async def exists() -> Observation:
            found = await call_provider(self._provider.object_exists, bucket, key)
            return Observation(satisfied=found, detail=f"{key!r} {'present' if found else 'absent'} in {bucket}")

        await self._poll(exists, policy, f"{key!r} to exist in {bucket}")

    async def message_delivered(
        self,
        queue: ResourceHandle,
        correlation_id: Optional[str] = None,
        policy: Optional[PollPolicy] = None,
    ) -> QueueMessage:
        """Wait for a message (optionally one mentioning ``correlation_id``) without consuming it."""
        found: list[QueueMessage] = []

        async def delivered() -> Observation:
            messages = await call_provider(self._provider.peek_messages, queue)
            matching = [m for m in messages if correlation_id is None or _mentions(m, correlation_id)]
            found[:] = matching
            return Observation(satisfied=bool(matching), detail=f"{len(messages)} visible message(s) on {queue}")

        target = f" for correlation id {correlation_id}" if correlation_id else ""
        await self._poll(delivered, policy, f"a message on {queue}{target}")
        return found[0]

    async def next_message(
        self, queue: ResourceHandle, policy: Optional[PollPolicy] = None
    ) -> QueueMessage:
        """Wait for and receive the next message from ``queue``."""
        received: list[QueueMessage] = []

        async def arrived() -> Observation:
            message = await call_provider(self._provider.receive_message, queue)
            if message is not None:
                received.append(message)
            return Observation(satisfied=message is not None, detail=f"no message on {queue}")

        await self._poll(arrived, policy, f"a message to arrive on {queue}")
        return received[0]

    # ---- logs ----

    async def logs_contain(
        self,
        handle: ResourceHandle,
        patterns: Iterable[str],
        within_seconds: Optional[float] = None,
        policy: Optional[PollPolicy] = None,
    ) -> LogMatchResult:
        patterns = list(patterns)
        recent = self._settings.window.recent_seconds if within_seconds is None else within_seconds
        result = LogMatchResult(found=False)

        async def contains() -> Observation:
            nonlocal result
            result = await self._reader.contains_any(handle, self._window(recent), patterns)
            return Observation(satisfied=result.found, detail=f"none of {patterns} in {handle} logs")

        await self._poll(contains, policy, f"{handle} logs to contain any of {patterns}")
        return result

    async def has_no_errors(
        self, handle: ResourceHandle, within_seconds: Optional[float] = None
    ) -> LogErrorSummary:
        recent = self._settings.window.recent_seconds if within_seconds is None else within_seconds
        summary = await self._reader.check_errors(handle, self._window(recent))
        if summary.has_errors:
            raise VerificationFailedError(
                f"{handle} logs contain {summary.error_count} error line(s): {summary.lines[:5]}"
            )
        return summary

    # ---- metrics ----

    async def meets_sla(
        self,
        handle: ResourceHandle,
        requirements: Mapping[str, float],
        within_seconds: Optional[float] = None,
    ) -> SLAResult:
        span = self._settings.window.metrics_seconds if within_seconds is None else within_seconds
        result = await self._aggregator.verify_sla(handle, self._window(span), requirements)
        if not result.meets_sla:
            raise VerificationFailedError(f"SLA violations for {handle}: {', '.join(result.violations)}")
        return result

    # ---- tracing ----

    async def trace_complete(
        self,
        correlation_id: str,
        stages: Sequence[TraceStage | str],
        lookback_seconds: Optional[float] = None,
        policy: Optional[PollPolicy] = None,
    ) -> Trace:
        """Re-poll the tracer until every stage has an event for ``correlation_id``."""
        latest: Any = None

        async def complete() -> Observation:
            nonlocal latest
            latest = await self._tracer.trace(correlation_id, stages, lookback_seconds)
            detail = latest.describe() if isinstance(latest, PartialTrace) else None
            return Observation(satisfied=isinstance(latest, Trace), detail=detail)

        await self._poll(complete, policy, f"trace {correlation_id} through {[str(s) for s in stages]}")
        logger.info("Trace %s complete: %s", correlation_id, [str(e.stage) for e in latest.events])
        return latest
