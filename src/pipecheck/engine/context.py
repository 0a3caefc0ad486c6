"""Per-scenario context: typed step state plus the engine wired for one scenario."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Coroutine, Optional, TypeVar

from pydantic import BaseModel, Field

from pipecheck.core.config import AppSettings
from pipecheck.core.exceptions import PreconditionNotSetError
from pipecheck.core.protocols import IAwsProvider
from pipecheck.engine.actions import ArtifactPublisher
from pipecheck.engine.facade import VerificationFacade
from pipecheck.engine.locator import ResourceLocator
from pipecheck.engine.log_reader import ExecutionLogReader
from pipecheck.engine.metrics import MetricsAggregator
from pipecheck.engine.poller import ConditionPoller
from pipecheck.engine.state_machines import StateMachineInspector
from pipecheck.engine.tracer import CorrelationTracer
from pipecheck.models.records import utcnow
from pipecheck.models.resources import QueueMessage, ResourceHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScenarioState(BaseModel):
    """Values earlier steps hand to later ones. Read them through ``require``."""

    model_config = {"validate_assignment": True}

    bucket: Optional[ResourceHandle] = None
    function: Optional[ResourceHandle] = None
    state_machine: Optional[ResourceHandle] = None
    queue: Optional[ResourceHandle] = None
    correlation_id: Optional[str] = None
    correlation_ids: list[str] = Field(default_factory=list)
    uploaded_key: Optional[str] = None
    execution_arn: Optional[str] = None
    last_message: Optional[QueueMessage] = None
    processing_started_at: Optional[datetime] = None

    def require(self, field: str) -> Any:
        if field not in type(self).model_fields:
            raise AttributeError(f"ScenarioState has no field {field!r}")
        value = getattr(self, field)
        if value is None:
            raise PreconditionNotSetError(field)
        return value


class ScenarioContext:
    """Everything one scenario owns: handle cache, correlation ids, policies, state.

    Create one per scenario and ``close()`` it at teardown; nothing here is
    shared with other scenarios. ``run`` drives engine coroutines on a loop
    owned by the scenario.
    """

    def __init__(
        self,
        *,
        settings: AppSettings,
        provider: IAwsProvider,
        poller: ConditionPoller,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.state = ScenarioState()
        self.poller = poller
        self.locator = ResourceLocator(provider)
        self.reader = ExecutionLogReader(provider)
        self.aggregator = MetricsAggregator(self.reader, now=now)
        self.tracer = CorrelationTracer(
            provider,
            self.reader,
            lookback_seconds=settings.trace.lookback_seconds,
            clock_skew_seconds=settings.trace.clock_skew_seconds,
            match_artifact_key=settings.trace.match_artifact_key,
            now=now,
        )
        self.inspector = StateMachineInspector(provider)
        self.publisher = ArtifactPublisher(provider, self.tracer)
        self.verify = VerificationFacade(
            settings=settings,
            provider=provider,
            poller=poller,
            reader=self.reader,
            aggregator=self.aggregator,
            tracer=self.tracer,
            inspector=self.inspector,
            now=now,
        )
        self._runner: Optional[asyncio.Runner] = None

    @classmethod
    def create(
        cls,
        provider: IAwsProvider,
        settings: AppSettings | None = None,
        poller: ConditionPoller | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> "ScenarioContext":
        return cls(
            settings=settings or AppSettings(),
            provider=provider,
            poller=poller or ConditionPoller(),
            now=now,
        )

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run an engine coroutine to completion from synchronous step code."""
        if self._runner is None:
            self._runner = asyncio.Runner()
        return self._runner.run(coro)

    def close(self) -> None:
        if self._runner is not None:
            self._runner.close()
            self._runner = None
        self.tracer.clear()
        self.locator.clear()
        logger.debug("Scenario context closed")
