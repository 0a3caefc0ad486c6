"""Helpers for calling blocking provider code from coroutines."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def call_provider(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Run a blocking provider call in a worker thread so other scenarios keep polling."""
    return await asyncio.to_thread(func, *args, **kwargs)


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value

