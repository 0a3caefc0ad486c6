"""Condition Poller: retry-until-true with timeout and pluggable backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from pipecheck.core.aio import resolve
from pipecheck.core.exceptions import PollTimeoutError, ProviderError
from pipecheck.core.protocols import Condition
from pipecheck.models.policy import Observation, PollPolicy

logger = logging.getLogger(__name__)


def _as_observation(result: Any) -> Observation:
    if isinstance(result, Observation):
        return result
    return Observation(satisfied=bool(result))


class ConditionPoller:
    """Evaluates a condition until it holds or the policy's budget runs out.

    The poller keeps no state between calls, so one instance can serve any
    number of concurrent waits. ``clock`` and ``sleep`` are injectable for
    deterministic tests.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    async def wait_for(
        self,
        condition: Condition,
        policy: PollPolicy,
        description: str = "condition",
    ) -> Observation:
        """Return the first satisfied observation or raise ``PollTimeoutError``.

        Only ``ProviderError`` (throttling, a flaky endpoint) counts as "not
        satisfied yet" and is retried. Anything else, fatal verification
        errors and misuse such as a ``ValueError`` included, propagates at once.
        """
        started = self._clock()
        attempts = 0
        last: Optional[Observation] = None
        last_error: Optional[BaseException] = None

        while True:
            attempts += 1
            try:
                last = _as_observation(await resolve(condition()))
                last_error = None
            except ProviderError as exc:
                logger.warning("Poll attempt %d for %s failed: %r", attempts, description, exc)
                last_error = exc
            else:
                if last.satisfied:
                    logger.debug("%s satisfied after %d attempt(s)", description, attempts)
                    return last
                logger.debug("%s not satisfied (attempt %d): %s", description, attempts, last.detail)

            elapsed = self._clock() - started
            remaining = policy.timeout_seconds - elapsed
            out_of_attempts = policy.max_attempts is not None and attempts >= policy.max_attempts
            if remaining <= 0 or out_of_attempts:
                error = PollTimeoutError(
                    description,
                    attempts=attempts,
                    elapsed_seconds=elapsed,
                    timeout_seconds=policy.timeout_seconds,
                    interval_seconds=policy.interval_seconds,
                    last_observed=last.detail if last is not None else None,
                    last_error=last_error,
                )
                logger.error("%s", error)
                raise error from last_error

            await self._sleep(min(policy.backoff(attempts, policy.interval_seconds), remaining))
