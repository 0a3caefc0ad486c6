"""Engine configuration using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings

from pipecheck.models.policy import PollPolicy, exponential_backoff, fixed_backoff


class AwsConfig(BaseSettings):
    """AWS client configuration."""

    model_config = {"env_prefix": "PIPECHECK_AWS_"}

    region: str = "us-east-1"
    endpoint_url: str | None = None  # LocalStack override
    profile: str | None = None


class PollConfig(BaseSettings):
    """Default poll policy for eventual-consistency checks."""

    model_config = {"env_prefix": "PIPECHECK_POLL_"}

    timeout_seconds: float = 30.0
    interval_seconds: float = 1.0
    max_attempts: int | None = None
    backoff: Literal["fixed", "exponential"] = "fixed"
    backoff_multiplier: float = 2.0
    max_interval_seconds: float = 10.0
    max_timeout_seconds: float = 300.0  # cap for timeouts derived from "within N minutes"

    def to_policy(self, timeout_seconds: float | None = None) -> PollPolicy:
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        backoff = fixed_backoff
        if self.backoff == "exponential":
            backoff = exponential_backoff(self.backoff_multiplier, self.max_interval_seconds)
        return PollPolicy(
            timeout_seconds=timeout,
            interval_seconds=min(self.interval_seconds, timeout),
            max_attempts=self.max_attempts,
            backoff=backoff,
        )


class TraceConfig(BaseSettings):
    """Correlation tracing configuration."""

    model_config = {"env_prefix": "PIPECHECK_TRACE_"}

    lookback_seconds: float = 300.0
    clock_skew_seconds: float = 5.0
    match_artifact_key: bool = False


class WindowConfig(BaseSettings):
    """Default time windows for log and metric checks."""

    model_config = {"env_prefix": "PIPECHECK_WINDOW_"}

    recent_seconds: float = 60.0
    metrics_seconds: float = 300.0


class AppSettings(BaseSettings):
    """Root settings aggregating all sub-configs."""

    model_config = {"env_prefix": "PIPECHECK_"}

    environment: Literal["local", "dev", "uat", "prod"] = "dev"
    log_level: str = "INFO"

    aws: AwsConfig = AwsConfig()
    poll: PollConfig = PollConfig()
    trace: TraceConfig = TraceConfig()
    window: WindowConfig = WindowConfig()
