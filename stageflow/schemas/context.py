"""
Per-dispatch values: JobExecutionContext and RetryPolicy.

A JobExecutionContext is built fresh at every dispatch, handed to exactly
one in-flight call and discarded on return. It is never part of the static
specification.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .specification import Job


_EMPTY_META: Mapping[str, str] = MappingProxyType({})


@dataclass(frozen=True)
class JobExecutionContext:
    """
    What a leaf activity receives.

    Attributes:
        job: The job being run
        meta: Metadata of the root specification (read-only view)
        correlation_id: Run id, or the derived id of a nested sub-workflow
    """
    job: Job
    meta: Mapping[str, str] = field(default_factory=lambda: _EMPTY_META)
    correlation_id: str = ""

    @classmethod
    def build(
        cls,
        job: Job,
        meta: Optional[Mapping[str, str]],
        correlation_id: str,
    ) -> "JobExecutionContext":
        """Build a context with a read-only copy of the inherited metadata."""
        frozen = MappingProxyType(dict(meta)) if meta else _EMPTY_META
        return cls(job=job, meta=frozen, correlation_id=correlation_id)

    @property
    def parameters(self) -> Mapping[str, str]:
        return self.job.parameters or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "meta": dict(self.meta),
            "correlation_id": self.correlation_id,
        }


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy attached to every dispatch.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        first_retry_interval_seconds: Delay before the second attempt
        backoff_coefficient: Multiplier applied to the delay after each retry
        max_retry_interval_seconds: Upper bound of the delay (None = unbounded)
    """
    max_attempts: int = 1
    first_retry_interval_seconds: float = 10
    backoff_coefficient: float = 1.0
    max_retry_interval_seconds: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_coefficient < 1.0:
            raise ValueError("backoff_coefficient must be >= 1.0")

    @classmethod
    def for_job(cls, job: Job) -> "RetryPolicy":
        """Retry policy from the job's retry fields."""
        return cls(
            max_attempts=job.max_retry_count,
            first_retry_interval_seconds=job.retry_timeout_seconds,
            backoff_coefficient=job.backoff_coefficient,
            max_retry_interval_seconds=job.max_retry_interval_seconds,
        )

    def delay_before(self, attempt_n: int) -> float:
        """Seconds to wait before attempt `attempt_n` (2 = first retry)."""
        if attempt_n <= 1:
            return 0.0
        delay = self.first_retry_interval_seconds * (self.backoff_coefficient ** (attempt_n - 2))
        if self.max_retry_interval_seconds is not None:
            delay = min(delay, self.max_retry_interval_seconds)
        return delay
