"""Integration test fixtures: LocalStack S3 and SQS."""

from __future__ import annotations

import os
import uuid

import boto3
import pytest
from botocore.exceptions import BotoCoreError, ClientError

from pipecheck.core.config import AppSettings, AwsConfig, PollConfig
from pipecheck.providers import create_provider

# Default LocalStack endpoint
LOCALSTACK_URL = os.environ.get("LOCALSTACK_URL", "http://localhost:4566")
REGION = "us-east-1"


def _localstack_available() -> bool:
    """Check if LocalStack is reachable."""
    try:
        client = boto3.client("sqs", region_name=REGION, endpoint_url=LOCALSTACK_URL)
        client.list_queues()
        return True
    except (BotoCoreError, ClientError):
        return False


skip_no_localstack = pytest.mark.skipif(
    not _localstack_available(),
    reason="LocalStack not available",
)


@pytest.fixture(scope="session")
def localstack_settings() -> AppSettings:
    return AppSettings(
        environment="local",
        aws=AwsConfig(region=REGION, endpoint_url=LOCALSTACK_URL),
        poll=PollConfig(timeout_seconds=10.0, interval_seconds=0.5),
    )


@pytest.fixture(scope="session")
def localstack_provider(localstack_settings):
    return create_provider(localstack_settings)


@pytest.fixture
def localstack_bucket():
    """A fresh S3 bucket on LocalStack."""
    name = f"pipecheck-it-{uuid.uuid4().hex[:8]}"
    boto3.client("s3", region_name=REGION, endpoint_url=LOCALSTACK_URL).create_bucket(Bucket=name)
    return name


@pytest.fixture
def localstack_queue():
    """A fresh SQS queue on LocalStack."""
    name = f"pipecheck-it-{uuid.uuid4().hex[:8]}"
    boto3.client("sqs", region_name=REGION, endpoint_url=LOCALSTACK_URL).create_queue(QueueName=name)
    return name
