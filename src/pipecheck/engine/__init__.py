"""Pipeline verification engine."""

from __future__ import annotations

from pipecheck.engine.context import ScenarioContext, ScenarioState
from pipecheck.engine.facade import VerificationFacade
from pipecheck.engine.poller import ConditionPoller
from pipecheck.engine.tracer import new_correlation_id

__all__ = [
    "ConditionPoller",
    "ScenarioContext",
    "ScenarioState",
    "VerificationFacade",
    "new_correlation_id",
]
