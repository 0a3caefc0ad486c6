"""Pluggable AWS providers behind the IAwsProvider protocol."""

from __future__ import annotations

from pipecheck.core.config import AppSettings
from pipecheck.providers.boto_provider import BotoAwsProvider
from pipecheck.providers.memory_provider import MemoryAwsProvider


def create_provider(settings: AppSettings | None = None) -> BotoAwsProvider:
    """Create the boto3 provider from application settings."""
    if settings is None:
        settings = AppSettings()

    return BotoAwsProvider(
        region=settings.aws.region,
        endpoint_url=settings.aws.endpoint_url,
        profile=settings.aws.profile,
    )


__all__ = ["BotoAwsProvider", "MemoryAwsProvider", "create_provider"]
