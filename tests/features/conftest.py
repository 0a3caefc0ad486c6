"""Feature test fixtures: run the shipped step definitions against the memory provider."""

from __future__ import annotations

import pytest
from pytest_bdd import given, parsers

from pipecheck.core.config import AppSettings, PollConfig
from pipecheck.engine.context import ScenarioContext
from pipecheck.models.resources import ResourceKind
from tests.fakes import MemoryAwsProvider, pipeline_trigger

WORKFLOW_DEFINITION = {
    "StartAt": "Validate",
    "States": {
        "Validate": {"Type": "Pass", "Next": "Store"},
        "Store": {"Type": "Pass", "End": True},
    },
}


@pytest.fixture(scope="session")
def pipecheck_settings() -> AppSettings:
    return AppSettings(poll=PollConfig(timeout_seconds=2.0, interval_seconds=0.1))


@pytest.fixture
def aws_provider() -> MemoryAwsProvider:
    provider = MemoryAwsProvider()
    provider.add_bucket("uploads")
    provider.add_function("ingest")
    provider.add_state_machine("workflow", WORKFLOW_DEFINITION)
    provider.add_queue("notifications")
    provider.on_upload("uploads", pipeline_trigger("ingest", "workflow"))
    return provider


# Replaces the packaged step with the same text: the drop bucket is created on demand.
@given(parsers.parse('I have a data processing pipeline with bucket "{name}"'))
def data_pipeline_bucket(scenario_context: ScenarioContext, aws_provider: MemoryAwsProvider, name: str):
    aws_provider.add_bucket(name)
    aws_provider.on_upload(name, pipeline_trigger("ingest", queue="notifications"))
    scenario_context.state.bucket = scenario_context.run(
        scenario_context.locator.locate(ResourceKind.BUCKET, name)
    )
