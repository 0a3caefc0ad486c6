"""pipecheck exception hierarchy."""

from __future__ import annotations

from typing import Any


class PipecheckError(Exception):
    """Base exception for all pipecheck errors."""


class FatalVerificationError(PipecheckError):
    """Error the poller must never retry."""


class NotFoundError(FatalVerificationError):
    """Named resource does not exist in the configured environment."""

    def __init__(self, kind: str, name: str, message: str = "") -> None:
        self.kind = kind
        self.name = name
        super().__init__(message or f"{kind} {name!r} not found")


class AccessError(FatalVerificationError):
    """Permission denied while querying a resource."""

    def __init__(self, kind: str, name: str, message: str = "") -> None:
        self.kind = kind
        self.name = name
        super().__init__(message or f"Access denied to {kind} {name!r}")


class OutOfOrderTraceError(FatalVerificationError):
    """A later pipeline stage was observed without its causal predecessor."""

    def __init__(self, correlation_id: str, stage: str, preceding_stage: str, reason: str) -> None:
        self.correlation_id = correlation_id
        self.stage = stage
        self.preceding_stage = preceding_stage
        super().__init__(
            f"Trace {correlation_id}: stage {stage!r} out of order "
            f"relative to {preceding_stage!r}: {reason}"
        )


class PreconditionNotSetError(FatalVerificationError):
    """A step needed scenario state that no earlier step has set."""

    def __init__(self, field: str, hint: str = "run the step that provides it first") -> None:
        self.field = field
        super().__init__(f"Scenario precondition {field!r} is not set; {hint}")


class ProviderError(PipecheckError):
    """AWS provider call failed."""


class TransientProviderError(ProviderError):
    """Provider call failed for a reason expected to clear up (throttling, network)."""


class VerificationFailedError(PipecheckError, AssertionError):
    """A one-shot verification did not hold."""


class PollTimeoutError(PipecheckError, TimeoutError):
    """Condition never became true within the poll budget."""

    def __init__(
        self,
        description: str,
        *,
        attempts: int,
        elapsed_seconds: float,
        timeout_seconds: float,
        interval_seconds: float,
        last_observed: Any = None,
        last_error: BaseException | None = None,
    ) -> None:
        self.description = description
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.last_observed = last_observed
        self.last_error = last_error
        message = (
            f"Timed out waiting for {description} after {elapsed_seconds:.2f}s "
            f"({attempts} attempts, timeout={timeout_seconds}s, interval={interval_seconds}s)"
        )
        if last_observed is not None:
            message += f"; last observed: {last_observed}"
        if last_error is not None:
            message += f"; last error: {last_error!r}"
        super().__init__(message)
