"""Retry policy for execution errors.

Only infrastructure-level failures (timeouts, tool crashes) are retried.
Gate failures, lock conflicts and configuration errors are terminal for
the run.
"""

from pydantic import BaseModel, ConfigDict, Field

from infragate.config import PipelineSettings
from infragate.state.models import ErrorKind


RETRYABLE_KINDS = frozenset({ErrorKind.EXECUTION_ERROR, ErrorKind.TIMEOUT})


class RetryPolicy(BaseModel):
    """Exponential backoff for retryable stage failures.

    Attributes:
        max_attempts: Total attempts per stage, including the first.
        initial_delay_seconds: Delay before the second attempt.
        backoff_multiplier: Factor applied to the delay per attempt.
        max_delay_seconds: Upper bound on a single delay.

    Example:
        >>> policy = RetryPolicy(max_attempts=3, initial_delay_seconds=2)
        >>> policy.delay_for(1), policy.delay_for(2)
        (2.0, 4.0)
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=60.0, ge=0)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def should_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """Whether a failed attempt may be followed by another.

        Args:
            kind: Error kind of the failed attempt.
            attempt: 1-based number of the attempt that failed.
        """
        return kind in RETRYABLE_KINDS and attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt."""
        delay = self.initial_delay_seconds * (
            self.backoff_multiplier ** (attempt - 1)
        )
        return min(delay, self.max_delay_seconds)
