"""Unit tests for BotoAwsProvider using moto."""

from __future__ import annotations

import io
import json
import time
import zipfile
from datetime import timedelta

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from pipecheck.core.exceptions import (
    AccessError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
)
from pipecheck.models.records import utcnow
from pipecheck.models.resources import ResourceHandle, ResourceKind
from pipecheck.providers.boto_provider import BotoAwsProvider, parse_lambda_events, translate_error

REGION = "us-east-1"
BUCKET = "pipeline-uploads"
FUNCTION = "ingest"
QUEUE = "notifications"
STATE_MACHINE = "workflow"
DEFINITION = {"StartAt": "Done", "States": {"Done": {"Type": "Pass", "End": True}}}

RID = "8f5a1c2e-1111-4c3b-9d7e-0123456789ab"


def _zip() -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("handler.py", "def handler(event, context):\n    return event\n")
    return buffer.getvalue()


@pytest.fixture
def aws():
    with mock_aws():
        iam = boto3.client("iam", region_name=REGION)
        role = iam.create_role(
            RoleName="pipeline-role",
            AssumeRolePolicyDocument=json.dumps({"Version": "2012-10-17", "Statement": []}),
        )["Role"]["Arn"]
        boto3.client("s3", region_name=REGION).create_bucket(Bucket=BUCKET)
        boto3.client("lambda", region_name=REGION).create_function(
            FunctionName=FUNCTION,
            Runtime="python3.12",
            Role=role,
            Handler="handler.handler",
            Code={"ZipFile": _zip()},
        )
        boto3.client("sqs", region_name=REGION).create_queue(QueueName=QUEUE)
        boto3.client("stepfunctions", region_name=REGION).create_state_machine(
            name=STATE_MACHINE, definition=json.dumps(DEFINITION), roleArn=role,
        )
        yield BotoAwsProvider(region=REGION)


def locate(provider, kind, name):
    return ResourceHandle(kind=kind, name=name, resolved_identifier=provider.find_resource(kind, name))


class TestFindResource:
    def test_bucket(self, aws):
        assert aws.find_resource(ResourceKind.BUCKET, BUCKET) == BUCKET

    def test_function_arn(self, aws):
        assert aws.find_resource(ResourceKind.FUNCTION, FUNCTION).endswith(f":function:{FUNCTION}")

    def test_queue_url(self, aws):
        assert aws.find_resource(ResourceKind.QUEUE, QUEUE).endswith(f"/{QUEUE}")

    def test_state_machine_arn(self, aws):
        assert aws.find_resource(ResourceKind.STATE_MACHINE, STATE_MACHINE).endswith(f":{STATE_MACHINE}")

    @pytest.mark.parametrize("kind", list(ResourceKind))
    def test_missing_resource_raises_not_found(self, aws, kind):
        with pytest.raises(NotFoundError):
            aws.find_resource(kind, "does-not-exist")


class TestS3:
    def test_upload_and_get_object(self, aws):
        bucket = locate(aws, ResourceKind.BUCKET, BUCKET)
        aws.upload_artifact(bucket, "in/a.csv", b"a,b", {"correlation-id": "cid-1"})
        stored = aws.get_object(bucket, "in/a.csv")
        assert stored.size == 3
        assert stored.metadata["correlation-id"] == "cid-1"
        assert aws.object_exists(bucket, "in/a.csv") is True

    def test_missing_object(self, aws):
        bucket = locate(aws, ResourceKind.BUCKET, BUCKET)
        assert aws.get_object(bucket, "nope") is None
        assert aws.object_exists(bucket, "nope") is False


class TestSqs:
    def test_send_and_peek_keeps_message(self, aws):
        queue = locate(aws, ResourceKind.QUEUE, QUEUE)
        aws.send_message(queue, "hello", {"correlation-id": "cid-1"})
        first = aws.peek_messages(queue)
        second = aws.peek_messages(queue)
        assert [m.body for m in first] == ["hello"]
        assert first[0].attributes == {"correlation-id": "cid-1"}
        assert first[0].sent_at is not None
        assert [m.body for m in second] == ["hello"]

    def test_receive_consumes(self, aws):
        queue = locate(aws, ResourceKind.QUEUE, QUEUE)
        aws.send_message(queue, "hello")
        assert aws.receive_message(queue).body == "hello"
        assert aws.receive_message(queue) is None
        assert aws.get_queue_depth(queue) == 0

    def test_queue_depth(self, aws):
        queue = locate(aws, ResourceKind.QUEUE, QUEUE)
        aws.send_message(queue, "one")
        aws.send_message(queue, "two")
        assert aws.get_queue_depth(queue) == 2


class TestFunctionLogs:
    def test_no_log_group_means_no_invocations(self, aws):
        function = locate(aws, ResourceKind.FUNCTION, FUNCTION)
        now = utcnow()
        assert aws.list_executions_or_logs(function, now - timedelta(minutes=5), now) == []

    def test_parses_invocations_from_log_events(self, aws):
        logs = boto3.client("logs", region_name=REGION)
        group = f"/aws/lambda/{FUNCTION}"
        logs.create_log_group(logGroupName=group)
        logs.create_log_stream(logGroupName=group, logStreamName="stream-1")
        base = int(time.time() * 1000) - 1000
        logs.put_log_events(
            logGroupName=group,
            logStreamName="stream-1",
            logEvents=[
                {"timestamp": base, "message": f"START RequestId: {RID} Version: $LATEST"},
                {"timestamp": base + 1, "message": f"2024-01-01T00:00:00.000Z\t{RID}\tINFO\tprocessing cid-7"},
                {"timestamp": base + 2, "message": f"END RequestId: {RID}"},
                {"timestamp": base + 3, "message": (
                    f"REPORT RequestId: {RID}\tDuration: 12.50 ms\tBilled Duration: 13 ms\t"
                    f"Memory Size: 128 MB\tMax Memory Used: 70 MB\tInit Duration: 150.00 ms"
                )},
            ],
        )
        function = locate(aws, ResourceKind.FUNCTION, FUNCTION)
        now = utcnow()
        [record] = aws.list_executions_or_logs(function, now - timedelta(minutes=5), now)
        assert record.request_id == RID
        assert record.duration_ms == 12.5
        assert record.cold_start is True
        assert record.memory_used_mb == 70
        assert record.succeeded is True
        assert "cid-7" in record.raw_payload


class TestStepFunctions:
    def test_definition(self, aws):
        state_machine = locate(aws, ResourceKind.STATE_MACHINE, STATE_MACHINE)
        assert aws.get_state_machine_definition(state_machine) == DEFINITION

    def test_executions_and_history(self, aws):
        state_machine = locate(aws, ResourceKind.STATE_MACHINE, STATE_MACHINE)
        arn = boto3.client("stepfunctions", region_name=REGION).start_execution(
            stateMachineArn=state_machine.resolved_identifier, input='{"cid": "cid-9"}'
        )["executionArn"]
        [execution] = aws.list_state_machine_executions(state_machine)
        assert execution.execution_arn == arn
        assert isinstance(aws.get_execution_history(arn), list)

    def test_execution_records(self, aws):
        state_machine = locate(aws, ResourceKind.STATE_MACHINE, STATE_MACHINE)
        boto3.client("stepfunctions", region_name=REGION).start_execution(
            stateMachineArn=state_machine.resolved_identifier, input='{"cid": "cid-9"}'
        )
        now = utcnow()
        [record] = aws.list_executions_or_logs(
            state_machine, now - timedelta(minutes=5), now + timedelta(minutes=1)
        )
        assert "cid-9" in record.raw_payload


class TestParseLambdaEvents:
    HANDLE = ResourceHandle(kind=ResourceKind.FUNCTION, name=FUNCTION, resolved_identifier="arn")

    def _event(self, offset, message, stream="s"):
        return {"timestamp": 1_700_000_000_000 + offset, "message": message, "logStreamName": stream}

    def test_timeout_marks_failure(self):
        [record] = parse_lambda_events(self.HANDLE, [
            self._event(0, f"START RequestId: {RID} Version: $LATEST"),
            self._event(1, "Task timed out after 3.00 seconds"),
            self._event(2, f"END RequestId: {RID}"),
            self._event(3, f"REPORT RequestId: {RID}\tDuration: 3000.00 ms\tStatus: timeout"),
        ])
        assert record.succeeded is False
        assert "timeout" in record.error_detail
        assert record.cold_start is False

    def test_unfinished_invocation_is_running(self):
        [record] = parse_lambda_events(self.HANDLE, [
            self._event(0, f"START RequestId: {RID} Version: $LATEST"),
            self._event(1, "still working"),
        ])
        assert record.succeeded is None
        assert record.log_lines()[-1] == "still working"

    def test_lines_outside_requests_are_dropped(self):
        assert parse_lambda_events(self.HANDLE, [self._event(0, "INIT_START Runtime Version")]) == []


class TestTranslateError:
    def _client_error(self, code, status=400):
        return ClientError(
            {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
            "Operation",
        )

    def test_not_found(self):
        assert isinstance(translate_error(self._client_error("ResourceNotFoundException"), "function", "f", "x"), NotFoundError)

    def test_access_denied(self):
        assert isinstance(translate_error(self._client_error("AccessDeniedException", 403), "function", "f", "x"), AccessError)

    def test_throttling_is_transient(self):
        assert isinstance(translate_error(self._client_error("ThrottlingException"), "queue", "q", "x"), TransientProviderError)

    def test_server_error_is_transient(self):
        assert isinstance(translate_error(self._client_error("Weird", 503), "queue", "q", "x"), TransientProviderError)

    def test_other_errors_are_retryable_provider_errors(self):
        error = translate_error(self._client_error("ValidationException"), "queue", "q", "x")
        assert type(error) is ProviderError

    def test_connection_problems_are_transient(self):
        error = translate_error(EndpointConnectionError(endpoint_url="http://localhost:4566"), "bucket", "b", "x")
        assert isinstance(error, TransientProviderError)
