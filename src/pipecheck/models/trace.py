"""Correlation trace models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from pipecheck.models.resources import ResourceHandle


class TraceStage(StrEnum):
    """Pipeline stages in causal order."""

    UPLOAD = "upload"
    INVOCATION = "invocation"
    STATE_MACHINE_EXECUTION = "state_machine_execution"
    MESSAGE_DELIVERY = "message_delivery"

    @property
    def order(self) -> int:
        return list(TraceStage).index(self)


class ArtifactRef(BaseModel):
    """An uploaded test artifact a correlation id was attached to."""

    model_config = {"frozen": True}

    bucket: ResourceHandle
    key: str


class TraceEvent(BaseModel):
    model_config = {"frozen": True}

    stage: TraceStage
    correlation_id: str
    timestamp: datetime
    resource: ResourceHandle
    outcome: str
    reference: str = ""  # object key, request id, execution ARN or message id


class Trace(BaseModel):
    """Every expected stage observed for one correlation id."""

    correlation_id: str
    events: list[TraceEvent] = Field(default_factory=list)
    complete: Literal[True] = True

    def stages(self) -> list[TraceStage]:
        return [e.stage for e in self.events]

    def event_for(self, stage: TraceStage) -> Optional[TraceEvent]:
        return next((e for e in self.events if e.stage == stage), None)


class PartialTrace(BaseModel):
    """Some expected stages not observed yet."""

    correlation_id: str
    events: list[TraceEvent] = Field(default_factory=list)
    missing_stages: list[TraceStage] = Field(default_factory=list)
    complete: Literal[False] = False

    def describe(self) -> dict[str, Any]:
        return {
            "found": [str(e.stage) for e in self.events],
            "missing": [str(s) for s in self.missing_stages],
        }


TraceResult = Union[Trace, PartialTrace]

