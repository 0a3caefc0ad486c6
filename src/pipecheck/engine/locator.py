"""Resource Locator: resolve named resources once per scenario."""

from __future__ import annotations

import asyncio
import logging

from pipecheck.core.aio import call_provider
from pipecheck.core.protocols import IAwsProvider
from pipecheck.models.resources import ResourceHandle, ResourceKind

logger = logging.getLogger(__name__)


class ResourceLocator:
    """Scenario-scoped cache of resolved ResourceHandles.

    ``NotFoundError`` and ``AccessError`` from the provider propagate
    unchanged and nothing is cached for a failed lookup.
    """

    def __init__(self, provider: IAwsProvider) -> None:
        self._provider = provider
        self._handles: dict[tuple[ResourceKind, str], ResourceHandle] = {}
        self._lock = asyncio.Lock()

    async def locate(self, kind: ResourceKind | str, name: str) -> ResourceHandle:
        kind = ResourceKind(kind)
        key = (kind, name)
        cached = self._handles.get(key)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._handles.get(key)
            if cached is not None:
                return cached
            identifier = await call_provider(self._provider.find_resource, kind, name)
            handle = ResourceHandle(kind=kind, name=name, resolved_identifier=identifier)
            self._handles[key] = handle
            logger.info("Resolved %s -> %s", handle, identifier)
            return handle

    def handles(self) -> list[ResourceHandle]:
        return list(self._handles.values())

    def clear(self) -> None:
        self._handles.clear()
