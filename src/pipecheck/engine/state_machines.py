"""Step Functions helpers: execution lookup, executed states, SLAs and data flow."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from pipecheck.core.aio import call_provider
from pipecheck.core.exceptions import VerificationFailedError
from pipecheck.core.protocols import IAwsProvider
from pipecheck.core.types import JsonDict
from pipecheck.models.metrics import SLAResult
from pipecheck.models.resources import (
    DataFlowReport,
    DefinitionCheck,
    ResourceHandle,
    StateMachineExecution,
)

logger = logging.getLogger(__name__)

TERMINAL_STATE_TYPES = frozenset({"Succeed", "Fail"})

EXECUTION_SLA_REQUIREMENTS = frozenset({"max_total_execution_ms", "max_state_execution_ms"})

EXECUTION_END_EVENTS = {
    "ExecutionSucceeded": "SUCCEEDED",
    "ExecutionFailed": "FAILED",
    "ExecutionTimedOut": "TIMED_OUT",
    "ExecutionAborted": "ABORTED",
}


def _millis(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000


def check_definition(definition: JsonDict) -> DefinitionCheck:
    """Structurally validate an Amazon States Language document."""
    errors: list[str] = []
    states = definition.get("States")
    if not isinstance(states, dict) or not states:
        return DefinitionCheck(is_valid=False, errors=["definition has no States"])

    start_at = definition.get("StartAt")
    has_start = isinstance(start_at, str) and start_at in states
    if not has_start:
        errors.append(f"StartAt {start_at!r} does not name a state")

    has_end = False
    for name, state in states.items():
        if not isinstance(state, dict):
            errors.append(f"state {name!r} is not an object")
            continue
        if state.get("End") is True or state.get("Type") in TERMINAL_STATE_TYPES:
            has_end = True
        target = state.get("Next")
        if target is not None and target not in states:
            errors.append(f"state {name!r} transitions to unknown state {target!r}")
    if not has_end:
        errors.append("definition has no terminal state")

    return DefinitionCheck(
        is_valid=not errors,
        has_start_state=has_start,
        has_end_states=has_end,
        states=list(states),
        errors=errors,
    )


def state_durations(history: list[JsonDict]) -> dict[str, float]:
    """Milliseconds spent in each state (longest visit when a state repeats)."""
    entered: dict[str, datetime] = {}
    durations: dict[str, float] = {}
    for event in history:
        if "stateEnteredEventDetails" in event:
            entered[event["stateEnteredEventDetails"]["name"]] = event["timestamp"]
        elif "stateExitedEventDetails" in event:
            name = event["stateExitedEventDetails"]["name"]
            if name in entered:
                elapsed = _millis(entered.pop(name), event["timestamp"])
                durations[name] = max(durations.get(name, 0.0), elapsed)
    return durations


def _parse(document: Optional[str]) -> tuple[bool, Any]:
    if document is None:
        return True, None
    try:
        return True, json.loads(document)
    except ValueError:
        return False, None


def data_flow(execution_arn: str, history: list[JsonDict]) -> DataFlowReport:
    """Compare an execution's input with what its states and the execution emitted.

    A state output or final output that is not JSON is corruption. A
    finished execution with no output, or whose output object dropped
    top-level keys of the input object, has lost data.
    """
    status = "RUNNING"
    execution_input: Optional[str] = None
    output: Optional[str] = None
    last_state_output: Optional[str] = None
    corrupt: list[str] = []
    for event in history:
        if "executionStartedEventDetails" in event:
            execution_input = event["executionStartedEventDetails"].get("input")
        elif "stateExitedEventDetails" in event:
            details = event["stateExitedEventDetails"]
            last_state_output = details.get("output")
            if not _parse(last_state_output)[0]:
                corrupt.append(details["name"])
        elif "executionSucceededEventDetails" in event:
            output = event["executionSucceededEventDetails"].get("output")
        status = EXECUTION_END_EVENTS.get(event.get("type", ""), status)

    if status == "SUCCEEDED" and output is None:
        output = last_state_output
    parsed, document = _parse(output)
    if not parsed:
        corrupt.append("(execution output)")

    lost: list[str] = []
    source = _parse(execution_input)[1]
    if status == "SUCCEEDED" and isinstance(source, dict) and isinstance(document, dict):
        lost = sorted(set(source) - set(document))

    return DataFlowReport(
        execution_arn=execution_arn,
        status=status,
        input=execution_input,
        output=output,
        lost_keys=lost,
        corrupt_states=corrupt,
    )


class StateMachineInspector:
    def __init__(self, provider: IAwsProvider) -> None:
        self._provider = provider

    async def latest_execution(self, state_machine: ResourceHandle) -> StateMachineExecution:
        executions = await call_provider(self._provider.list_state_machine_executions, state_machine)
        if not executions:
            raise VerificationFailedError(
                f"No executions found for {state_machine}; make sure it was triggered"
            )
        return max(executions, key=lambda e: e.start_date)

    async def execution_for(
        self, state_machine: ResourceHandle, correlation_id: str
    ) -> Optional[StateMachineExecution]:
        """Newest execution whose input or history mentions ``correlation_id``.

        Other scenarios may be driving the same state machine, so the newest
        execution overall is not necessarily ours.
        """
        executions = await call_provider(self._provider.list_state_machine_executions, state_machine)
        for execution in sorted(executions, key=lambda e: e.start_date, reverse=True):
            if correlation_id in (execution.input or ""):
                return execution
            history = await self.history(execution.execution_arn)
            if correlation_id in json.dumps(history, default=str):
                return execution
        return None

    async def history(self, execution_arn: str) -> list[JsonDict]:
        return await call_provider(self._provider.get_execution_history, execution_arn)

    async def data_flow(self, execution_arn: str) -> DataFlowReport:
        report = data_flow(execution_arn, await self.history(execution_arn))
        logger.debug("Data flow of %s: %s", execution_arn, report)
        return report

    async def executed_states(self, execution_arn: str) -> list[str]:
        """State names in the order they were entered."""
        return [
            event["stateEnteredEventDetails"]["name"]
            for event in await self.history(execution_arn)
            if "stateEnteredEventDetails" in event
        ]

    async def state_durations(self, execution_arn: str) -> dict[str, float]:
        return state_durations(await self.history(execution_arn))

    async def verify_execution_sla(
        self, execution_arn: str, requirements: Mapping[str, float]
    ) -> SLAResult:
        unknown = sorted(set(requirements) - EXECUTION_SLA_REQUIREMENTS)
        if unknown:
            raise ValueError(f"Unknown execution SLA requirement(s): {', '.join(unknown)}")

        history = await self.history(execution_arn)
        if not history:
            return SLAResult(meets_sla=False, violations=[f"no history for {execution_arn}"])

        violations: list[str] = []
        limit = requirements.get("max_total_execution_ms")
        if limit is not None:
            total = _millis(history[0]["timestamp"], history[-1]["timestamp"])
            if total > limit:
                violations.append(
                    f"total_execution_ms: observed {total:g} exceeds max_total_execution_ms={limit:g}"
                )
        limit = requirements.get("max_state_execution_ms")
        if limit is not None:
            for name, elapsed in state_durations(history).items():
                if elapsed > limit:
                    violations.append(
                        f"state_execution_ms[{name}]: observed {elapsed:g} "
                        f"exceeds max_state_execution_ms={limit:g}"
                    )
        if violations:
            logger.info("Execution %s violates SLA: %s", execution_arn, "; ".join(violations))
        return SLAResult(meets_sla=not violations, violations=violations)

    async def validate_definition(self, state_machine: ResourceHandle) -> DefinitionCheck:
        definition = await call_provider(self._provider.get_state_machine_definition, state_machine)
        return check_definition(definition)
