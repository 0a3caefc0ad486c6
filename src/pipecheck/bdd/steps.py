"""pytest-bdd step definitions for S3 -> Lambda -> Step Functions -> SQS pipelines.

Every step reads and writes ``scenario_context.state`` and delegates the
checking to the Verification Facade. Steps are fixtures: a step with the same
text declared in a closer conftest or test module replaces the one here.
"""

from __future__ import annotations

import json
import logging

from pytest_bdd import given, parsers, then, when

from pipecheck.core.exceptions import PreconditionNotSetError, VerificationFailedError
from pipecheck.engine.context import ScenarioContext
from pipecheck.models.records import utcnow
from pipecheck.models.resources import ResourceKind, StateMachineExecution
from pipecheck.models.trace import Trace, TraceStage

logger = logging.getLogger(__name__)

CUSTOMER_RECORDS_CSV = (
    "id,name,email\n"
    "1,John Doe,john.doe@example.com\n"
    "2,Jane Smith,jane.smith@example.com\n"
    "3,Bob Johnson,bob.johnson@example.com\n"
    "4,Invalid User,invalid-email\n"
)

ACCEPTABLE_FUNCTION_METRICS = {
    "max_average_duration_ms": 5000,
    "max_error_rate": 5.0,
}

ACCEPTABLE_ERROR_RATES = {
    "max_error_rate": 1.0,
}

STATE_MACHINE_SLAS = {
    "max_total_execution_ms": 60000,
    "max_state_execution_ms": 30000,
}

# Repeated cold starts under steady load point at memory pressure.
MEMORY_STABILITY = {
    "max_cold_starts": 3,
}

MULTIPLE_FILES = {
    "file1.json": json.dumps({"id": 1, "data": "test1"}),
    "file2.json": json.dumps({"id": 2, "data": "test2"}),
    "file3.json": json.dumps({"id": 3, "data": "test3"}),
}

BATCH_KEY = "batch-data.json"


def batch_records(count: int) -> str:
    """A JSON array of ``count`` generated records sharing one timestamp."""
    stamp = utcnow().isoformat()
    return json.dumps([
        {"id": f"batch-{i}", "data": f"record-{i}", "timestamp": stamp}
        for i in range(count)
    ])


def _locate(context: ScenarioContext, kind: ResourceKind, name: str):
    handle = context.run(context.locator.locate(kind, name))
    setattr(context.state, str(kind), handle)
    return handle


# ---------------------------------------------------------------------------
# Background
# ---------------------------------------------------------------------------

@given(parsers.parse('I have an S3 bucket named "{name}"'))
@given(parsers.parse('I have a data processing pipeline with bucket "{name}"'))
def s3_bucket(scenario_context: ScenarioContext, name: str):
    _locate(scenario_context, ResourceKind.BUCKET, name)


@given(parsers.parse('I have a Lambda function named "{name}"'))
@given(parsers.parse('I have a data processor Lambda named "{name}"'))
def lambda_function(scenario_context: ScenarioContext, name: str):
    _locate(scenario_context, ResourceKind.FUNCTION, name)


@given(parsers.parse('I have a Step Function named "{name}"'))
def step_function(scenario_context: ScenarioContext, name: str):
    _locate(scenario_context, ResourceKind.STATE_MACHINE, name)


@given(parsers.parse('I have an SQS queue named "{name}"'))
@given(parsers.parse('I have a notification system with SQS queue "{name}"'))
def sqs_queue(scenario_context: ScenarioContext, name: str):
    _locate(scenario_context, ResourceKind.QUEUE, name)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

def _upload(context: ScenarioContext, key: str, content: str) -> None:
    state = context.state
    bucket = state.require("bucket")
    state.processing_started_at = utcnow()
    state.correlation_id = context.run(context.publisher.upload(bucket, key, content))
    state.correlation_ids.append(state.correlation_id)
    state.uploaded_key = key


@when(parsers.parse('I upload a file "{key}" with content "{content}" to the S3 bucket'))
def upload_file(scenario_context: ScenarioContext, key: str, content: str):
    _upload(scenario_context, key, content)


@when(parsers.parse('I upload a CSV file "{key}" with valid customer records'))
def upload_customer_csv(scenario_context: ScenarioContext, key: str):
    _upload(scenario_context, key, CUSTOMER_RECORDS_CSV)


@when("I upload multiple files to the S3 bucket")
def upload_multiple_files(scenario_context: ScenarioContext):
    for key, content in MULTIPLE_FILES.items():
        _upload(scenario_context, key, content)


@when(parsers.parse("I process a batch of {count:d} records"))
def process_batch(scenario_context: ScenarioContext, count: int):
    _upload(scenario_context, BATCH_KEY, batch_records(count))


@when(parsers.parse('I send a message "{body}" to the SQS queue'))
def send_message(scenario_context: ScenarioContext, body: str):
    state = scenario_context.state
    state.processing_started_at = utcnow()
    state.correlation_id = scenario_context.run(
        scenario_context.publisher.send(state.require("queue"), body)
    )


# ---------------------------------------------------------------------------
# S3 and Lambda checks
# ---------------------------------------------------------------------------

@then(parsers.parse('the S3 bucket should contain the file "{key}"'))
def bucket_contains(scenario_context: ScenarioContext, key: str):
    scenario_context.run(scenario_context.verify.file_exists(scenario_context.state.require("bucket"), key))


@then("the Lambda function should be invoked")
def lambda_invoked(scenario_context: ScenarioContext):
    scenario_context.run(scenario_context.verify.was_invoked(scenario_context.state.require("function")))


@then(parsers.parse("the Lambda function should be invoked {times:d} times within {minutes:d} minutes"))
def lambda_invoked_times(scenario_context: ScenarioContext, times: int, minutes: int):
    function = scenario_context.state.require("function")
    scenario_context.run(scenario_context.verify.invoked_at_least(function, times, minutes))


@then(parsers.parse('the Lambda function logs should contain "{pattern}"'))
def lambda_logs_contain(scenario_context: ScenarioContext, pattern: str):
    function = scenario_context.state.require("function")
    scenario_context.run(scenario_context.verify.logs_contain(function, [pattern]))


@then("the Lambda function logs should not contain errors")
def lambda_logs_clean(scenario_context: ScenarioContext):
    scenario_context.run(scenario_context.verify.has_no_errors(scenario_context.state.require("function")))


@then("the Lambda function should have acceptable execution metrics")
def lambda_metrics(scenario_context: ScenarioContext):
    function = scenario_context.state.require("function")
    scenario_context.run(scenario_context.verify.meets_sla(function, ACCEPTABLE_FUNCTION_METRICS))


@then("the Lambda function should have acceptable custom error rates")
def lambda_error_rates(scenario_context: ScenarioContext):
    function = scenario_context.state.require("function")
    scenario_context.run(scenario_context.verify.meets_sla(function, ACCEPTABLE_ERROR_RATES))


@then("the memory usage should remain stable")
def lambda_memory_stable(scenario_context: ScenarioContext):
    function = scenario_context.state.require("function")
    scenario_context.run(scenario_context.verify.meets_sla(function, MEMORY_STABILITY))


# ---------------------------------------------------------------------------
# Step Functions checks
# ---------------------------------------------------------------------------

def _scenario_execution(context: ScenarioContext) -> StateMachineExecution:
    """The execution this scenario triggered, or the newest one without a correlation id."""
    state_machine = context.state.require("state_machine")
    correlation_id = context.state.correlation_id
    if correlation_id is not None:
        return context.run(context.verify.execution_for(state_machine, correlation_id))
    context.run(context.verify.state_machine_executed(state_machine))
    return context.run(context.inspector.latest_execution(state_machine))


@then("the Step Function should be executed")
def state_machine_executed(scenario_context: ScenarioContext):
    execution = _scenario_execution(scenario_context)
    if scenario_context.state.execution_arn is None:
        scenario_context.state.execution_arn = execution.execution_arn


@then("the Step Function execution ARN should be captured")
def capture_execution_arn(scenario_context: ScenarioContext):
    context = scenario_context
    if context.state.execution_arn is not None:
        return
    execution = _scenario_execution(context)
    context.state.execution_arn = execution.execution_arn
    logger.info("Captured execution %s of %s", execution.execution_arn, context.state.state_machine)


@then("the Step Function should have a valid definition")
def state_machine_definition_valid(scenario_context: ScenarioContext):
    state_machine = scenario_context.state.require("state_machine")
    check = scenario_context.run(scenario_context.inspector.validate_definition(state_machine))
    if not check.is_valid:
        raise VerificationFailedError(f"{state_machine} definition is invalid: {check.errors}")


@then(parsers.parse('the Step Function should pass through the states "{names}"'))
def state_machine_states(scenario_context: ScenarioContext, names: str):
    arn = scenario_context.state.require("execution_arn")
    executed = scenario_context.run(scenario_context.inspector.executed_states(arn))
    missing = [n.strip() for n in names.split(",") if n.strip() not in executed]
    if missing:
        raise VerificationFailedError(f"Execution {arn} never entered {missing}; entered {executed}")


@then("the Step Function should meet performance SLAs")
def state_machine_slas(scenario_context: ScenarioContext):
    arn = scenario_context.state.require("execution_arn")
    result = scenario_context.run(scenario_context.inspector.verify_execution_sla(arn, STATE_MACHINE_SLAS))
    if not result.meets_sla:
        raise VerificationFailedError(f"Execution {arn} SLA violations: {result.violations}")


@then("the Step Function should have no data loss or corruption")
def state_machine_data_flow(scenario_context: ScenarioContext):
    context = scenario_context
    arn = context.state.execution_arn or _scenario_execution(context).execution_arn
    report = context.run(context.inspector.data_flow(arn))
    if report.data_loss:
        raise VerificationFailedError(
            f"Data loss in execution {arn} ({report.status}): "
            f"output {report.output!r}, dropped keys {report.lost_keys}"
        )
    if report.data_corruption:
        raise VerificationFailedError(
            f"Data corruption in execution {arn}: states {report.corrupt_states} emitted invalid JSON"
        )


# ---------------------------------------------------------------------------
# SQS checks
# ---------------------------------------------------------------------------

@then("a notification message should be sent to the SQS queue")
def message_sent(scenario_context: ScenarioContext):
    state = scenario_context.state
    state.last_message = scenario_context.run(
        scenario_context.verify.message_delivered(state.require("queue"), state.correlation_id)
    )


@then(parsers.parse("the notification should be delivered within {seconds:d} seconds"))
def message_sent_within(scenario_context: ScenarioContext, seconds: int):
    context = scenario_context
    policy = context.verify.default_policy.with_timeout(seconds)
    context.state.last_message = context.run(
        context.verify.message_delivered(context.state.require("queue"), context.state.correlation_id, policy)
    )


@then(parsers.parse('the message should contain "{text}"'))
def message_contains(scenario_context: ScenarioContext, text: str):
    message = scenario_context.state.require("last_message")
    if text not in message.body:
        raise VerificationFailedError(f"Message {message.message_id} does not contain {text!r}: {message.body}")


# ---------------------------------------------------------------------------
# Tracing and timing
# ---------------------------------------------------------------------------

def _trace_through_pipeline(context: ScenarioContext, correlation_id: str) -> Trace:
    """Trace from the upload through every stage whose resource the scenario named."""
    state = context.state
    stages = [TraceStage.UPLOAD]
    for stage, handle in (
        (TraceStage.INVOCATION, state.function),
        (TraceStage.STATE_MACHINE_EXECUTION, state.state_machine),
        (TraceStage.MESSAGE_DELIVERY, state.queue),
    ):
        if handle is not None:
            context.tracer.bind_stage(stage, handle)
            stages.append(stage)
    return context.run(context.verify.trace_complete(correlation_id, stages))


@then(parsers.parse('I should be able to trace the file "{key}" through the entire pipeline'))
def trace_file(scenario_context: ScenarioContext, key: str):
    correlation_id = scenario_context.state.require("correlation_id")
    artifact = scenario_context.tracer.artifact_for(correlation_id)
    if artifact is None or artifact.key != key:
        raise VerificationFailedError(f"{key!r} was not uploaded with tracking in this scenario")
    _trace_through_pipeline(scenario_context, correlation_id)


@then("I should be able to trace all files through the entire pipeline")
def trace_all_files(scenario_context: ScenarioContext):
    correlation_ids = scenario_context.state.correlation_ids
    if not correlation_ids:
        raise PreconditionNotSetError("correlation_ids", "upload at least one file first")
    for correlation_id in correlation_ids:
        trace = _trace_through_pipeline(scenario_context, correlation_id)
        logger.info("Traced %s through %s", trace.event_for(TraceStage.UPLOAD).reference,
                    [str(s) for s in trace.stages()])


@then("no records should be lost during processing")
def no_records_lost(scenario_context: ScenarioContext):
    scenario_context.state.require("function")
    correlation_id = scenario_context.state.require("correlation_id")
    trace = _trace_through_pipeline(scenario_context, correlation_id)
    invocation = trace.event_for(TraceStage.INVOCATION)
    if invocation.outcome == "failed":
        raise VerificationFailedError(f"Invocation {invocation.reference} failed; records may have been lost")


@then(parsers.parse("the processing time should be under {seconds:d} seconds"))
def processing_time(scenario_context: ScenarioContext, seconds: int):
    started = scenario_context.state.require("processing_started_at")
    elapsed = (utcnow() - started).total_seconds()
    if elapsed >= seconds:
        raise VerificationFailedError(f"Processing took {elapsed:.1f}s, limit {seconds}s")
