"""Resource handles and provider-facing records."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ResourceKind(StrEnum):
    BUCKET = "bucket"
    FUNCTION = "function"
    STATE_MACHINE = "state_machine"
    QUEUE = "queue"


class ResourceHandle(BaseModel):
    """A named cloud resource resolved to its identifier (name, ARN or queue URL)."""

    model_config = {"frozen": True}

    kind: ResourceKind
    name: str
    resolved_identifier: str

    def __str__(self) -> str:
        return f"{self.kind} {self.name!r}"


class StoredObject(BaseModel):
    """An S3 object as seen by the provider."""

    model_config = {"frozen": True}

    key: str
    size: int = 0
    last_modified: datetime
    metadata: dict[str, str] = Field(default_factory=dict)


class QueueMessage(BaseModel):
    """A message observed on an SQS queue."""

    model_config = {"frozen": True}

    message_id: str
    body: str
    sent_at: Optional[datetime] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    receipt_handle: Optional[str] = None


class StateMachineExecution(BaseModel):
    """Summary of one Step Functions execution."""

    model_config = {"frozen": True}

    execution_arn: str
    name: str = ""
    status: str  # RUNNING, SUCCEEDED, FAILED, TIMED_OUT, ABORTED
    start_date: datetime
    stop_date: Optional[datetime] = None
    input: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status != "RUNNING"


class DefinitionCheck(BaseModel):
    """Structural validation of an Amazon States Language definition."""

    is_valid: bool
    has_start_state: bool = False
    has_end_states: bool = False
    states: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class DataFlowReport(BaseModel):
    """How data moved from an execution's input to its final output."""

    execution_arn: str
    status: str
    input: Optional[str] = None
    output: Optional[str] = None
    lost_keys: list[str] = Field(default_factory=list)
    corrupt_states: list[str] = Field(default_factory=list)

    @property
    def data_loss(self) -> bool:
        return self.status != "RUNNING" and (not self.output or bool(self.lost_keys))

    @property
    def data_corruption(self) -> bool:
        return bool(self.corrupt_states)


def metadata_value(metadata: dict[str, Any], key: str) -> Optional[str]:
    """Case-insensitive metadata lookup (S3 lower-cases user metadata keys)."""
    wanted = key.lower()
    for k, v in metadata.items():
        if k.lower() == wanted:
            return str(v)
    return None
