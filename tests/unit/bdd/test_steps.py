"""Step definitions called directly against scenario contexts sharing one provider."""

from __future__ import annotations

import json

import pytest

from pipecheck.bdd import steps
from pipecheck.core.config import AppSettings, PollConfig
from pipecheck.core.exceptions import PreconditionNotSetError, VerificationFailedError
from pipecheck.engine.context import ScenarioContext
from pipecheck.engine.poller import ConditionPoller
from tests.fakes import FakeClock, MemoryAwsProvider, pipeline_trigger

SETTINGS = AppSettings(poll=PollConfig(timeout_seconds=2.0, interval_seconds=0.1))


@pytest.fixture
def provider():
    fake = MemoryAwsProvider()
    fake.add_bucket("uploads")
    fake.add_function("ingest")
    fake.add_state_machine("workflow")
    return fake


@pytest.fixture
def pipeline(provider):
    provider.on_upload("uploads", pipeline_trigger("ingest", "workflow"))
    return provider


def open_scenario(provider) -> ScenarioContext:
    clock = FakeClock()
    context = ScenarioContext.create(provider, SETTINGS, poller=ConditionPoller(clock=clock, sleep=clock.sleep))
    steps.s3_bucket(context, "uploads")
    steps.lambda_function(context, "ingest")
    steps.step_function(context, "workflow")
    return context


@pytest.fixture
def context(provider):
    context = open_scenario(provider)
    yield context
    context.close()


@pytest.fixture
def other_context(provider):
    context = open_scenario(provider)
    yield context
    context.close()


def started_with(provider, execution_arn):
    return provider.get_execution_history(execution_arn)[0]["executionStartedEventDetails"]["input"]


class TestExecutionCapture:
    def test_interleaved_uploads_capture_their_own_execution(self, context, other_context, pipeline):
        steps.upload_file(context, "a.csv", "1")
        steps.upload_file(other_context, "b.csv", "2")

        steps.capture_execution_arn(context)
        steps.capture_execution_arn(other_context)

        assert context.state.correlation_id in started_with(pipeline, context.state.execution_arn)
        assert other_context.state.correlation_id in started_with(pipeline, other_context.state.execution_arn)
        assert context.state.execution_arn != other_context.state.execution_arn

    def test_executed_step_records_the_scenario_execution(self, context, other_context, pipeline):
        steps.upload_file(context, "a.csv", "1")
        steps.upload_file(other_context, "b.csv", "2")
        steps.state_machine_executed(context)
        assert '"a.csv"' in started_with(pipeline, context.state.execution_arn)

    def test_without_correlation_id_the_newest_execution_is_used(self, context, provider):
        provider.start_execution("workflow", '{"n": 1}')
        steps.capture_execution_arn(context)
        assert started_with(provider, context.state.execution_arn) == '{"n": 1}'


class TestMultipleFiles:
    def test_every_upload_is_remembered(self, context, pipeline):
        steps.upload_multiple_files(context)
        ids = context.state.correlation_ids
        assert len(ids) == len(steps.MULTIPLE_FILES) == len(set(ids))
        assert context.state.correlation_id == ids[-1]
        assert [context.tracer.artifact_for(i).key for i in ids] == list(steps.MULTIPLE_FILES)

    def test_all_files_are_traced(self, context, pipeline):
        steps.upload_multiple_files(context)
        steps.trace_all_files(context)

    def test_tracing_without_uploads_is_a_missing_precondition(self, context):
        with pytest.raises(PreconditionNotSetError) as excinfo:
            steps.trace_all_files(context)
        assert excinfo.value.field == "correlation_ids"

    def test_one_untraceable_file_fails(self, context, provider):
        forward = pipeline_trigger("ingest", "workflow")

        def only_first(fake, bucket, key, content, metadata):
            if key == "a.csv":
                forward(fake, bucket, key, content, metadata)

        provider.on_upload("uploads", only_first)
        steps.upload_file(context, "a.csv", "1")
        steps.upload_file(context, "b.csv", "2")
        with pytest.raises(TimeoutError) as excinfo:
            steps.trace_all_files(context)
        assert context.state.correlation_ids[1] in str(excinfo.value)


class TestBatch:
    def test_batch_upload_carries_generated_records(self, context, pipeline):
        steps.process_batch(context, 25)
        records = json.loads(pipeline.object_content("uploads", steps.BATCH_KEY))
        assert len(records) == 25
        assert records[0]["id"] == "batch-0"
        assert records[-1]["data"] == "record-24"

    def test_no_records_lost(self, context, pipeline):
        steps.process_batch(context, 5)
        steps.no_records_lost(context)

    def test_failed_invocation_loses_records(self, context, provider):
        def failing(fake, bucket, key, content, metadata):
            correlation_id = metadata["correlation-id"]
            fake.record_invocation("ingest", f"Processing {correlation_id}", succeeded=False)
            fake.start_execution("workflow", json.dumps({"correlationId": correlation_id}))

        provider.on_upload("uploads", failing)
        steps.process_batch(context, 5)
        with pytest.raises(VerificationFailedError) as excinfo:
            steps.no_records_lost(context)
        assert "records may have been lost" in str(excinfo.value)


class TestMemoryStability:
    def test_few_cold_starts_are_stable(self, context, provider):
        provider.record_invocation("ingest", cold_start=True)
        provider.record_invocation("ingest")
        steps.lambda_memory_stable(context)

    def test_repeated_cold_starts_fail(self, context, provider):
        for _ in range(4):
            provider.record_invocation("ingest", cold_start=True)
        with pytest.raises(VerificationFailedError) as excinfo:
            steps.lambda_memory_stable(context)
        assert "cold_starts: observed 4 exceeds max_cold_starts=3" in str(excinfo.value)

    def test_no_invocations_is_not_stable(self, context):
        with pytest.raises(VerificationFailedError) as excinfo:
            steps.lambda_memory_stable(context)
        assert "cold_starts: no data" in str(excinfo.value)


class TestDataFlowStep:
    def test_pass_through_pipeline_is_intact(self, context, pipeline):
        steps.upload_file(context, "a.csv", "1")
        steps.state_machine_data_flow(context)

    def test_dropped_fields_are_reported(self, context, provider):
        execution = provider.start_execution("workflow", '{"key": "a.csv", "rows": 4}', output='{"key": "a.csv"}')
        context.state.execution_arn = execution.execution_arn
        with pytest.raises(VerificationFailedError) as excinfo:
            steps.state_machine_data_flow(context)
        assert "['rows']" in str(excinfo.value)

    def test_failed_execution_is_reported(self, context, provider):
        execution = provider.start_execution("workflow", '{"key": "a.csv"}', status="FAILED")
        context.state.execution_arn = execution.execution_arn
        with pytest.raises(VerificationFailedError) as excinfo:
            steps.state_machine_data_flow(context)
        assert "FAILED" in str(excinfo.value)
