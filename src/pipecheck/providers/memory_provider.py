"""In-memory IAwsProvider for unit tests and dry runs: dict-backed fake pipeline."""

from __future__ import annotations

import json
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from pipecheck.core.exceptions import AccessError, NotFoundError, TransientProviderError
from pipecheck.models.records import ExecutionRecord, utcnow
from pipecheck.models.resources import (
    QueueMessage,
    ResourceHandle,
    ResourceKind,
    StateMachineExecution,
    StoredObject,
)

# (provider, bucket name, key, content, metadata)
UploadTrigger = Callable[["MemoryAwsProvider", str, str, bytes, dict[str, str]], None]

ACCOUNT_ID = "000000000000"


def default_definition(states: Iterable[str] = ("Process",)) -> dict[str, Any]:
    """A linear chain of Pass states ending in the last one."""
    names = list(states)
    chain: dict[str, Any] = {}
    for index, name in enumerate(names):
        state: dict[str, Any] = {"Type": "Pass"}
        if index + 1 < len(names):
            state["Next"] = names[index + 1]
        else:
            state["End"] = True
        chain[name] = state
    return {"StartAt": names[0], "States": chain}


class MemoryAwsProvider:
    """Dict-backed IAwsProvider.

    Resources are registered with ``add_resource`` (or the ``add_*`` helpers);
    anything else is reported as ``NotFoundError``. ``deny`` and
    ``fail_next`` inject access and transient failures. ``on_upload``
    registers triggers that run synchronously inside ``upload_artifact``,
    which is how tests stand up a fake event-driven pipeline.
    """

    def __init__(self, region: str = "us-east-1", now: Callable[[], datetime] = utcnow) -> None:
        self._region = region
        self._now = now
        self._lock = threading.RLock()
        self._resources: dict[tuple[ResourceKind, str], str] = {}
        self._denied: set[tuple[ResourceKind, str]] = set()
        self._pending_failures = 0
        self._objects: dict[tuple[str, str], tuple[bytes, StoredObject]] = {}
        self._invocations: dict[str, list[ExecutionRecord]] = {}
        self._executions: dict[str, list[StateMachineExecution]] = {}
        self._histories: dict[str, list[dict[str, Any]]] = {}
        self._definitions: dict[str, dict[str, Any]] = {}
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._triggers: dict[str, list[UploadTrigger]] = {}
        self.find_calls: dict[tuple[ResourceKind, str], int] = {}

    # ---- fixture setup ----

    def add_resource(self, kind: ResourceKind | str, name: str) -> str:
        kind = ResourceKind(kind)
        identifier = self._identifier(kind, name)
        with self._lock:
            self._resources[(kind, name)] = identifier
        return identifier

    def add_bucket(self, name: str) -> str:
        return self.add_resource(ResourceKind.BUCKET, name)

    def add_function(self, name: str) -> str:
        return self.add_resource(ResourceKind.FUNCTION, name)

    def add_state_machine(self, name: str, definition: Optional[dict[str, Any]] = None) -> str:
        self._definitions[name] = definition if definition is not None else default_definition()
        return self.add_resource(ResourceKind.STATE_MACHINE, name)

    def add_queue(self, name: str) -> str:
        self._queues.setdefault(name, deque())
        return self.add_resource(ResourceKind.QUEUE, name)

    def remove_resource(self, kind: ResourceKind | str, name: str) -> None:
        with self._lock:
            self._resources.pop((ResourceKind(kind), name), None)

    def deny(self, kind: ResourceKind | str, name: str) -> None:
        """Make every call touching ``name`` fail with ``AccessError``."""
        with self._lock:
            self._denied.add((ResourceKind(kind), name))

    def fail_next(self, times: int = 1) -> None:
        """Make the next ``times`` provider calls raise ``TransientProviderError``."""
        with self._lock:
            self._pending_failures += times

    def on_upload(self, bucket: str, trigger: UploadTrigger) -> None:
        self._triggers.setdefault(bucket, []).append(trigger)

    def _identifier(self, kind: ResourceKind, name: str) -> str:
        if kind == ResourceKind.BUCKET:
            return name
        if kind == ResourceKind.FUNCTION:
            return f"arn:aws:lambda:{self._region}:{ACCOUNT_ID}:function:{name}"
        if kind == ResourceKind.STATE_MACHINE:
            return f"arn:aws:states:{self._region}:{ACCOUNT_ID}:stateMachine:{name}"
        return f"https://sqs.{self._region}.amazonaws.com/{ACCOUNT_ID}/{name}"

    def _check(self, kind: ResourceKind, name: str) -> None:
        with self._lock:
            if self._pending_failures:
                self._pending_failures -= 1
                raise TransientProviderError(f"Injected transient failure calling {kind} {name!r}")
            if (kind, name) in self._denied:
                raise AccessError(kind, name)
            if (kind, name) not in self._resources:
                raise NotFoundError(kind, name)

    # ---- simulated pipeline activity ----

    def record_invocation(
        self,
        function: str,
        payload: str = "",
        *,
        start: Optional[datetime] = None,
        duration_ms: float = 100.0,
        succeeded: Optional[bool] = True,
        error_detail: Optional[str] = None,
        cold_start: bool = False,
        memory_used_mb: Optional[int] = 64,
    ) -> ExecutionRecord:
        """Append one function execution whose log payload is ``payload``."""
        start = start or self._now()
        handle = ResourceHandle(
            kind=ResourceKind.FUNCTION,
            name=function,
            resolved_identifier=self._identifier(ResourceKind.FUNCTION, function),
        )
        record = ExecutionRecord(
            resource=handle,
            request_id=str(uuid.uuid4()),
            start_time=start,
            end_time=None if succeeded is None else start + timedelta(milliseconds=duration_ms),
            duration_ms=None if succeeded is None else duration_ms,
            succeeded=succeeded,
            error_detail=error_detail,
            cold_start=cold_start,
            memory_used_mb=memory_used_mb,
            raw_payload=payload,
        )
        with self._lock:
            self._invocations.setdefault(function, []).append(record)
        return record

    def start_execution(
        self,
        state_machine: str,
        input: str = "{}",
        *,
        status: str = "SUCCEEDED",
        output: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        state_ms: float = 50.0,
    ) -> StateMachineExecution:
        """Record an execution of ``state_machine`` walking ``states`` in order.

        Every state passes ``input`` through unchanged except the last, which
        emits ``output`` (default: ``input``) as the execution's result.
        """
        output = input if output is None else output
        start = start or self._now()
        arn = self._identifier(ResourceKind.STATE_MACHINE, state_machine).replace(
            ":stateMachine:", ":execution:"
        ) + f":{uuid.uuid4()}"
        if states is None:
            definition = self._definitions.get(state_machine) or default_definition()
            states = list(definition["States"])

        history: list[dict[str, Any]] = [{
            "id": 1,
            "type": "ExecutionStarted",
            "timestamp": start,
            "executionStartedEventDetails": {"input": input},
        }]
        moment = start
        states = list(states)
        for index, name in enumerate(states):
            history.append({
                "id": len(history) + 1,
                "type": "PassStateEntered",
                "timestamp": moment,
                "stateEnteredEventDetails": {"name": name, "input": input},
            })
            moment = moment + timedelta(milliseconds=state_ms)
            history.append({
                "id": len(history) + 1,
                "type": "PassStateExited",
                "timestamp": moment,
                "stateExitedEventDetails": {
                    "name": name,
                    "output": output if index == len(states) - 1 else input,
                },
            })
        if status == "SUCCEEDED":
            history.append({
                "id": len(history) + 1,
                "type": "ExecutionSucceeded",
                "timestamp": moment,
                "executionSucceededEventDetails": {"output": output},
            })
        elif status != "RUNNING":
            history.append({
                "id": len(history) + 1,
                "type": "ExecutionFailed",
                "timestamp": moment,
                "executionFailedEventDetails": {"error": "States.TaskFailed"},
            })

        execution = StateMachineExecution(
            execution_arn=arn,
            name=arn.rsplit(":", 1)[-1],
            status=status,
            start_date=start,
            stop_date=None if status == "RUNNING" else moment,
            input=input,
        )
        with self._lock:
            self._executions.setdefault(state_machine, []).append(execution)
            self._histories[arn] = history
        return execution

    def enqueue(self, queue: str, body: str, attributes: Optional[dict[str, str]] = None) -> str:
        message = QueueMessage(
            message_id=str(uuid.uuid4()),
            body=body,
            sent_at=self._now(),
            attributes=dict(attributes or {}),
            receipt_handle=str(uuid.uuid4()),
        )
        with self._lock:
            self._queues.setdefault(queue, deque()).append(message)
        return message.message_id

    def object_content(self, bucket: str, key: str) -> bytes:
        return self._objects[(bucket, key)][0]

    # ---- IAwsProvider ----

    def find_resource(self, kind: ResourceKind, name: str) -> str:
        kind = ResourceKind(kind)
        with self._lock:
            self.find_calls[(kind, name)] = self.find_calls.get((kind, name), 0) + 1
        self._check(kind, name)
        return self._resources[(kind, name)]

    def list_executions_or_logs(
        self, handle: ResourceHandle, start: datetime, end: datetime
    ) -> list[ExecutionRecord]:
        self._check(handle.kind, handle.name)
        if handle.kind == ResourceKind.FUNCTION:
            records = list(self._invocations.get(handle.name, []))
        elif handle.kind == ResourceKind.STATE_MACHINE:
            records = [self._execution_record(handle, e)
                       for e in self._executions.get(handle.name, [])]
        else:
            raise ValueError(f"{handle} has no executions or logs")
        return [r for r in records if start <= r.start_time <= end]

    def _execution_record(self, handle: ResourceHandle, execution: StateMachineExecution) -> ExecutionRecord:
        duration = None
        if execution.stop_date is not None:
            duration = (execution.stop_date - execution.start_date).total_seconds() * 1000
        return ExecutionRecord(
            resource=handle,
            request_id=execution.execution_arn,
            start_time=execution.start_date,
            end_time=execution.stop_date,
            duration_ms=duration,
            succeeded=None if not execution.terminal else execution.status == "SUCCEEDED",
            error_detail=None if execution.status in ("RUNNING", "SUCCEEDED") else execution.status,
            raw_payload=json.dumps(self._histories.get(execution.execution_arn, []), default=str),
        )

    def upload_artifact(
        self, bucket: ResourceHandle, key: str, content: bytes, metadata: dict[str, str]
    ) -> None:
        self._check(ResourceKind.BUCKET, bucket.name)
        stored = StoredObject(
            key=key,
            size=len(content),
            last_modified=self._now(),
            # S3 returns user metadata keys lower-cased
            metadata={k.lower(): v for k, v in metadata.items()},
        )
        with self._lock:
            self._objects[(bucket.name, key)] = (content, stored)
        for trigger in self._triggers.get(bucket.name, []):
            trigger(self, bucket.name, key, content, stored.metadata)

    def object_exists(self, bucket: ResourceHandle, key: str) -> bool:
        return self.get_object(bucket, key) is not None

    def get_object(self, bucket: ResourceHandle, key: str) -> StoredObject | None:
        self._check(ResourceKind.BUCKET, bucket.name)
        entry = self._objects.get((bucket.name, key))
        return entry[1] if entry is not None else None

    def send_message(
        self, queue: ResourceHandle, body: str, attributes: dict[str, str] | None = None
    ) -> str:
        self._check(ResourceKind.QUEUE, queue.name)
        return self.enqueue(queue.name, body, attributes)

    def receive_message(self, queue: ResourceHandle, wait_seconds: int = 0) -> QueueMessage | None:
        self._check(ResourceKind.QUEUE, queue.name)
        with self._lock:
            messages = self._queues.get(queue.name)
            return messages.popleft() if messages else None

    def peek_messages(self, queue: ResourceHandle, max_messages: int = 10) -> list[QueueMessage]:
        self._check(ResourceKind.QUEUE, queue.name)
        with self._lock:
            return list(self._queues.get(queue.name, ()))[:max_messages]

    def get_queue_depth(self, queue: ResourceHandle) -> int:
        self._check(ResourceKind.QUEUE, queue.name)
        return len(self._queues.get(queue.name, ()))

    def list_state_machine_executions(
        self, state_machine: ResourceHandle
    ) -> list[StateMachineExecution]:
        self._check(ResourceKind.STATE_MACHINE, state_machine.name)
        return list(self._executions.get(state_machine.name, []))

    def get_execution_history(self, execution_arn: str) -> list[dict[str, Any]]:
        history = self._histories.get(execution_arn)
        if history is None:
            raise NotFoundError("execution", execution_arn)
        return list(history)

    def get_state_machine_definition(self, state_machine: ResourceHandle) -> dict[str, Any]:
        self._check(ResourceKind.STATE_MACHINE, state_machine.name)
        return self._definitions[state_machine.name]


def pipeline_trigger(
    function: str,
    state_machine: Optional[str] = None,
    queue: Optional[str] = None,
) -> UploadTrigger:
    """Upload trigger simulating S3 -> Lambda -> Step Functions -> SQS.

    Each stage carries the uploaded object's correlation id in its payload.
    """

    def trigger(
        provider: MemoryAwsProvider, bucket: str, key: str, content: bytes, metadata: dict[str, str]
    ) -> None:
        correlation_id = metadata.get("correlation-id", "")
        event = json.dumps({"bucket": bucket, "key": key, "correlationId": correlation_id})
        provider.record_invocation(
            function,
            f"START RequestId\nProcessing {event}\nEND RequestId",
        )
        if state_machine is not None:
            provider.start_execution(state_machine, event)
        if queue is not None:
            provider.enqueue(queue, event, {"correlation-id": correlation_id})

    return trigger
