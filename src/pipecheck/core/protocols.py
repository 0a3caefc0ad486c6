"""Protocol interfaces for pipecheck abstractions.

The engine only talks to AWS through these Protocols: structural typing,
no inheritance required, easy to fake in tests and to check with isinstance().
"""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Protocol, Union, runtime_checkable

from pipecheck.core.types import JsonDict
from pipecheck.models.policy import Observation
from pipecheck.models.records import ExecutionRecord
from pipecheck.models.resources import (
    QueueMessage,
    ResourceHandle,
    ResourceKind,
    StateMachineExecution,
    StoredObject,
)

ConditionResult = Union[bool, Observation]

# Side-effect free predicate re-evaluated on every poll tick.
Condition = Callable[[], Union[ConditionResult, Awaitable[ConditionResult]]]


# ---------------------------------------------------------------------------
# AWS provider adapter
# ---------------------------------------------------------------------------

@runtime_checkable
class IAwsProvider(Protocol):
    """Blocking AWS operations the verification engine consumes."""

    def find_resource(self, kind: ResourceKind, name: str) -> str: ...

    def list_executions_or_logs(
        self, handle: ResourceHandle, start: datetime, end: datetime
    ) -> list[ExecutionRecord]: ...

    def upload_artifact(
        self, bucket: ResourceHandle, key: str, content: bytes, metadata: dict[str, str]
    ) -> None: ...

    def object_exists(self, bucket: ResourceHandle, key: str) -> bool: ...

    def get_object(self, bucket: ResourceHandle, key: str) -> StoredObject | None: ...

    def send_message(
        self, queue: ResourceHandle, body: str, attributes: dict[str, str] | None = None
    ) -> str: ...

    def receive_message(self, queue: ResourceHandle, wait_seconds: int = 0) -> QueueMessage | None: ...

    def peek_messages(self, queue: ResourceHandle, max_messages: int = 10) -> list[QueueMessage]: ...

    def get_queue_depth(self, queue: ResourceHandle) -> int: ...

    def list_state_machine_executions(
        self, state_machine: ResourceHandle
    ) -> list[StateMachineExecution]: ...

    def get_execution_history(self, execution_arn: str) -> list[JsonDict]: ...

    def get_state_machine_definition(self, state_machine: ResourceHandle) -> JsonDict: ...
