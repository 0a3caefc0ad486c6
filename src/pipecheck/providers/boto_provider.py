"""boto3 IAwsProvider: S3, Lambda + CloudWatch Logs, Step Functions, SQS."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pipecheck.core.exceptions import (
    AccessError,
    NotFoundError,
    PipecheckError,
    ProviderError,
    TransientProviderError,
)
from pipecheck.models.records import ExecutionRecord
from pipecheck.models.resources import (
    QueueMessage,
    ResourceHandle,
    ResourceKind,
    StateMachineExecution,
    StoredObject,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({
    "404",
    "NoSuchBucket",
    "NoSuchKey",
    "NotFound",
    "ResourceNotFoundException",
    "StateMachineDoesNotExist",
    "ExecutionDoesNotExist",
    "QueueDoesNotExist",
    "AWS.SimpleQueueService.NonExistentQueue",
})

ACCESS_CODES = frozenset({
    "403",
    "AccessDenied",
    "AccessDeniedException",
    "Forbidden",
    "UnauthorizedOperation",
    "AuthorizationError",
})

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
    "InternalFailure",
    "RequestTimeout",
})

# Lambda runtime log lines
_START = re.compile(r"^START RequestId: (?P<rid>[\w-]+)")
_END = re.compile(r"^END RequestId: (?P<rid>[\w-]+)")
_REPORT = re.compile(r"^REPORT RequestId: (?P<rid>[\w-]+)")
_DURATION = re.compile(r"\tDuration: (?P<value>[\d.]+) ms")
_INIT = re.compile(r"Init Duration: (?P<value>[\d.]+) ms")
_MEMORY = re.compile(r"Max Memory Used: (?P<value>\d+) MB")
_STATUS = re.compile(r"Status: (?P<value>\w+)")
_REQUEST_ID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")

FAILURE_MARKERS = ("Task timed out", '"errorType"', "errorMessage")


def translate_error(exc: ClientError | BotoCoreError, kind: str, name: str, action: str) -> PipecheckError:
    """Map a botocore failure to the pipecheck hierarchy."""
    if isinstance(exc, BotoCoreError):
        return TransientProviderError(f"{action} {kind} {name!r} failed: {exc}")
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    if code in NOT_FOUND_CODES:
        return NotFoundError(kind, name)
    if code in ACCESS_CODES:
        return AccessError(kind, name, f"Access denied to {kind} {name!r} during {action}: {code}")
    if code in TRANSIENT_CODES or status >= 500:
        return TransientProviderError(f"{action} {kind} {name!r} failed transiently: {code}")
    return ProviderError(f"{action} {kind} {name!r} failed: {exc}")


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_millis(value: int | str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


@dataclass
class _Invocation:
    request_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    cold_start: bool = False
    memory_used_mb: Optional[int] = None
    status: Optional[str] = None
    lines: list[str] = field(default_factory=list)

    def to_record(self, handle: ResourceHandle) -> ExecutionRecord:
        failure = next((line for line in self.lines if any(m in line for m in FAILURE_MARKERS)), None)
        if self.end_time is None:
            succeeded = None
        else:
            succeeded = self.status is None and failure is None
        detail = failure
        if self.status is not None:
            detail = f"Status: {self.status}" + (f"; {failure}" if failure else "")
        return ExecutionRecord(
            resource=handle,
            request_id=self.request_id,
            start_time=self.start_time,
            end_time=self.end_time,
            duration_ms=self.duration_ms,
            succeeded=succeeded,
            error_detail=detail,
            cold_start=self.cold_start,
            memory_used_mb=self.memory_used_mb,
            raw_payload="\n".join(self.lines),
        )


def parse_lambda_events(handle: ResourceHandle, events: list[dict[str, Any]]) -> list[ExecutionRecord]:
    """Group CloudWatch log events into one record per Lambda request id.

    Lines between START and END of a log stream belong to that request; a
    REPORT line closes it and carries duration, memory and cold-start data.
    """
    invocations: dict[str, _Invocation] = {}
    current: dict[str, str] = {}

    def open_(rid: str, moment: datetime) -> _Invocation:
        if rid not in invocations:
            invocations[rid] = _Invocation(request_id=rid, start_time=moment)
        return invocations[rid]

    for event in sorted(events, key=lambda e: e["timestamp"]):
        message = event["message"].rstrip("\n")
        stream = event.get("logStreamName", "")
        moment = _from_millis(event["timestamp"])

        if match := _START.match(message):
            invocation = open_(match["rid"], moment)
            current[stream] = invocation.request_id
        elif match := _END.match(message):
            invocation = open_(match["rid"], moment)
            current.pop(stream, None)
        elif match := _REPORT.match(message):
            invocation = open_(match["rid"], moment)
            invocation.end_time = moment
            if found := _DURATION.search(message):
                invocation.duration_ms = float(found["value"])
            if found := _MEMORY.search(message):
                invocation.memory_used_mb = int(found["value"])
            if found := _STATUS.search(message):
                invocation.status = found["value"]
            invocation.cold_start = _INIT.search(message) is not None
        else:
            fields = message.split("\t")
            rid = fields[1] if len(fields) > 2 and _REQUEST_ID.match(fields[1]) else current.get(stream)
            if rid is None:
                continue
            invocation = open_(rid, moment)
        invocation.lines.append(message)

    return [inv.to_record(handle) for inv in invocations.values()]


class BotoAwsProvider:
    """Production IAwsProvider backed by boto3 clients."""

    def __init__(self, region: str = "us-east-1", endpoint_url: str | None = None,
                 profile: str | None = None) -> None:
        self._region = region
        self._endpoint_url = endpoint_url
        session = boto3.Session(profile_name=profile, region_name=region)
        kwargs: dict = {}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        self._s3 = session.client("s3", **kwargs)
        self._lambda = session.client("lambda", **kwargs)
        self._logs = session.client("logs", **kwargs)
        self._sfn = session.client("stepfunctions", **kwargs)
        self._sqs = session.client("sqs", **kwargs)

    # ---- resolution ----

    def find_resource(self, kind: ResourceKind, name: str) -> str:
        kind = ResourceKind(kind)
        try:
            if kind == ResourceKind.BUCKET:
                self._s3.head_bucket(Bucket=name)
                return name
            if kind == ResourceKind.FUNCTION:
                return self._lambda.get_function(FunctionName=name)["Configuration"]["FunctionArn"]
            if kind == ResourceKind.QUEUE:
                return self._sqs.get_queue_url(QueueName=name)["QueueUrl"]
            paginator = self._sfn.get_paginator("list_state_machines")
            for page in paginator.paginate():
                for machine in page.get("stateMachines", []):
                    if machine["name"] == name:
                        return machine["stateMachineArn"]
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, kind, name, "locate") from exc
        raise NotFoundError(kind, name)

    # ---- executions and logs ----

    def list_executions_or_logs(
        self, handle: ResourceHandle, start: datetime, end: datetime
    ) -> list[ExecutionRecord]:
        if handle.kind == ResourceKind.FUNCTION:
            return self._function_records(handle, start, end)
        if handle.kind == ResourceKind.STATE_MACHINE:
            return self._execution_records(handle, start, end)
        raise ValueError(f"{handle} has no executions or logs")

    def _function_records(self, handle: ResourceHandle, start: datetime, end: datetime) -> list[ExecutionRecord]:
        group = f"/aws/lambda/{handle.name}"
        events: list[dict[str, Any]] = []
        try:
            paginator = self._logs.get_paginator("filter_log_events")
            for page in paginator.paginate(
                logGroupName=group, startTime=_millis(start), endTime=_millis(end)
            ):
                events.extend(page.get("events", []))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise translate_error(exc, handle.kind, handle.name, "read logs of") from exc
            # No log group yet means no invocations, unless the function itself is gone.
            self.find_resource(ResourceKind.FUNCTION, handle.name)
            logger.debug("Log group %s does not exist yet", group)
            return []
        except BotoCoreError as exc:
            raise translate_error(exc, handle.kind, handle.name, "read logs of") from exc
        return parse_lambda_events(handle, events)

    def _execution_records(self, handle: ResourceHandle, start: datetime, end: datetime) -> list[ExecutionRecord]:
        records: list[ExecutionRecord] = []
        for execution in self.list_state_machine_executions(handle):
            if not start <= execution.start_date <= end:
                continue
            try:
                described = self._sfn.describe_execution(executionArn=execution.execution_arn)
            except (ClientError, BotoCoreError) as exc:
                raise translate_error(exc, "execution", execution.execution_arn, "describe") from exc
            duration = None
            if execution.stop_date is not None:
                duration = (execution.stop_date - execution.start_date).total_seconds() * 1000
            records.append(ExecutionRecord(
                resource=handle,
                request_id=execution.execution_arn,
                start_time=execution.start_date,
                end_time=execution.stop_date,
                duration_ms=duration,
                succeeded=None if not execution.terminal else execution.status == "SUCCEEDED",
                error_detail=described.get("error") or described.get("cause"),
                raw_payload="\n".join(
                    part for part in (described.get("input"), described.get("output")) if part
                ),
            ))
        return records

    # ---- S3 ----

    def upload_artifact(
        self, bucket: ResourceHandle, key: str, content: bytes, metadata: dict[str, str]
    ) -> None:
        try:
            self._s3.put_object(
                Bucket=bucket.resolved_identifier, Key=key, Body=content, Metadata=metadata,
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, bucket.kind, bucket.name, f"upload {key!r} to") from exc

    def object_exists(self, bucket: ResourceHandle, key: str) -> bool:
        return self.get_object(bucket, key) is not None

    def get_object(self, bucket: ResourceHandle, key: str) -> StoredObject | None:
        try:
            head = self._s3.head_object(Bucket=bucket.resolved_identifier, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise translate_error(exc, bucket.kind, bucket.name, f"head {key!r} in") from exc
        except BotoCoreError as exc:
            raise translate_error(exc, bucket.kind, bucket.name, f"head {key!r} in") from exc
        return StoredObject(
            key=key,
            size=head.get("ContentLength", 0),
            last_modified=head["LastModified"],
            metadata=head.get("Metadata", {}),
        )

    # ---- SQS ----

    def send_message(
        self, queue: ResourceHandle, body: str, attributes: dict[str, str] | None = None
    ) -> str:
        kwargs: dict[str, Any] = {"QueueUrl": queue.resolved_identifier, "MessageBody": body}
        if attributes:
            kwargs["MessageAttributes"] = {
                k: {"DataType": "String", "StringValue": v} for k, v in attributes.items()
            }
        try:
            return self._sqs.send_message(**kwargs)["MessageId"]
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, queue.kind, queue.name, "send to") from exc

    def _receive(self, queue: ResourceHandle, **kwargs: Any) -> list[dict[str, Any]]:
        try:
            response = self._sqs.receive_message(
                QueueUrl=queue.resolved_identifier,
                AttributeNames=["SentTimestamp"],
                MessageAttributeNames=["All"],
                **kwargs,
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, queue.kind, queue.name, "receive from") from exc
        return response.get("Messages", [])

    @staticmethod
    def _message(raw: dict[str, Any]) -> QueueMessage:
        sent = raw.get("Attributes", {}).get("SentTimestamp")
        return QueueMessage(
            message_id=raw["MessageId"],
            body=raw.get("Body", ""),
            sent_at=_from_millis(sent) if sent else None,
            attributes={
                k: v.get("StringValue", "") for k, v in raw.get("MessageAttributes", {}).items()
            },
            receipt_handle=raw.get("ReceiptHandle"),
        )

    def receive_message(self, queue: ResourceHandle, wait_seconds: int = 0) -> QueueMessage | None:
        """Receive and delete the next message, or return None when the queue is empty."""
        raw = self._receive(queue, MaxNumberOfMessages=1, WaitTimeSeconds=wait_seconds)
        if not raw:
            return None
        message = self._message(raw[0])
        try:
            self._sqs.delete_message(
                QueueUrl=queue.resolved_identifier, ReceiptHandle=message.receipt_handle
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, queue.kind, queue.name, "delete message from") from exc
        return message

    def peek_messages(self, queue: ResourceHandle, max_messages: int = 10) -> list[QueueMessage]:
        """Receive with a zero visibility timeout so messages stay available to consumers."""
        raw = self._receive(
            queue, MaxNumberOfMessages=max(1, min(max_messages, 10)), VisibilityTimeout=0
        )
        return [self._message(r) for r in raw]

    def get_queue_depth(self, queue: ResourceHandle) -> int:
        try:
            attributes = self._sqs.get_queue_attributes(
                QueueUrl=queue.resolved_identifier,
                AttributeNames=["ApproximateNumberOfMessages"],
            )["Attributes"]
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, queue.kind, queue.name, "inspect") from exc
        return int(attributes.get("ApproximateNumberOfMessages", 0))

    # ---- Step Functions ----

    def list_state_machine_executions(
        self, state_machine: ResourceHandle
    ) -> list[StateMachineExecution]:
        executions: list[StateMachineExecution] = []
        try:
            paginator = self._sfn.get_paginator("list_executions")
            for page in paginator.paginate(stateMachineArn=state_machine.resolved_identifier):
                for item in page.get("executions", []):
                    executions.append(StateMachineExecution(
                        execution_arn=item["executionArn"],
                        name=item.get("name", ""),
                        status=item["status"],
                        start_date=item["startDate"],
                        stop_date=item.get("stopDate"),
                    ))
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, state_machine.kind, state_machine.name, "list executions of") from exc
        return executions

    def get_execution_history(self, execution_arn: str) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        try:
            paginator = self._sfn.get_paginator("get_execution_history")
            for page in paginator.paginate(executionArn=execution_arn):
                events.extend(page.get("events", []))
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, "execution", execution_arn, "read history of") from exc
        return events

    def get_state_machine_definition(self, state_machine: ResourceHandle) -> dict[str, Any]:
        try:
            described = self._sfn.describe_state_machine(
                stateMachineArn=state_machine.resolved_identifier
            )
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, state_machine.kind, state_machine.name, "describe") from exc
        return json.loads(described["definition"])
