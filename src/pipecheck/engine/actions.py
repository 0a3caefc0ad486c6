"""Artifact Publisher: triggering actions that carry a correlation id."""

from __future__ import annotations

import logging
from typing import Optional

from pipecheck.core.aio import call_provider
from pipecheck.core.protocols import IAwsProvider
from pipecheck.engine.tracer import CORRELATION_METADATA_KEY, CorrelationTracer, new_correlation_id
from pipecheck.models.resources import ResourceHandle, ResourceKind
from pipecheck.models.trace import ArtifactRef

logger = logging.getLogger(__name__)


def _require_kind(handle: ResourceHandle, kind: ResourceKind) -> None:
    if handle.kind != kind:
        raise ValueError(f"{handle} is not a {kind}")


class ArtifactPublisher:
    """Writes test artifacts; the correlation id is attached before dispatch."""

    def __init__(self, provider: IAwsProvider, tracer: CorrelationTracer) -> None:
        self._provider = provider
        self._tracer = tracer

    async def upload(
        self,
        bucket: ResourceHandle,
        key: str,
        content: bytes | str,
        correlation_id: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """Upload ``content`` to ``bucket/key`` tagged with a correlation id; return the id."""
        _require_kind(bucket, ResourceKind.BUCKET)
        correlation_id = correlation_id or new_correlation_id()
        self._tracer.attach(ArtifactRef(bucket=bucket, key=key), correlation_id)

        body = content.encode("utf-8") if isinstance(content, str) else content
        tags = {**(metadata or {}), CORRELATION_METADATA_KEY: correlation_id}
        await call_provider(self._provider.upload_artifact, bucket, key, body, tags)
        logger.info("Uploaded %s to %s (%d bytes, correlation id %s)",
                    key, bucket, len(body), correlation_id)
        return correlation_id

    async def send(
        self, queue: ResourceHandle, body: str, correlation_id: Optional[str] = None
    ) -> str:
        """Send ``body`` to ``queue`` with a correlation id message attribute; return the id."""
        _require_kind(queue, ResourceKind.QUEUE)
        correlation_id = correlation_id or new_correlation_id()
        message_id = await call_provider(
            self._provider.send_message, queue, body, {CORRELATION_METADATA_KEY: correlation_id}
        )
        logger.info("Sent message %s to %s (correlation id %s)", message_id, queue, correlation_id)
        return correlation_id
