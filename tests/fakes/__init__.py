"""Shared test doubles: re-export the memory provider, plus a fake monotonic clock."""

from __future__ import annotations

from pipecheck.providers.memory_provider import MemoryAwsProvider, pipeline_trigger


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


__all__ = ["FakeClock", "MemoryAwsProvider", "pipeline_trigger"]
