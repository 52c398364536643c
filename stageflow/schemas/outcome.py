"""
Outcome - explicit result of a fan-in.

The stage runner turns whatever its fan-in raised into an Outcome and
decides containment by inspecting it:

    Outcome.success(value)          -> proceed
    Outcome.failed(kind, cause)     -> contain (continue_on_error) or re-raise
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from stageflow.errors import (
    ConfigurationError,
    EventWaitTimeout,
    JobFailure,
    StageTimeout,
    SubWorkflowFailure,
)


class FailureKind(str, Enum):
    """Classification of a failed outcome."""
    CONFIGURATION = "configuration"
    JOB_FAILURE = "job_failure"
    SUB_WORKFLOW_FAILURE = "sub_workflow_failure"
    STAGE_TIMEOUT = "stage_timeout"
    EVENT_WAIT_TIMEOUT = "event_wait_timeout"
    UNKNOWN = "unknown"

    @classmethod
    def classify(cls, error: BaseException) -> "FailureKind":
        if isinstance(error, StageTimeout):
            return cls.STAGE_TIMEOUT
        if isinstance(error, SubWorkflowFailure):
            return cls.SUB_WORKFLOW_FAILURE
        if isinstance(error, JobFailure):
            return cls.JOB_FAILURE
        if isinstance(error, EventWaitTimeout):
            return cls.EVENT_WAIT_TIMEOUT
        if isinstance(error, ConfigurationError):
            return cls.CONFIGURATION
        return cls.UNKNOWN


@dataclass(frozen=True)
class Outcome:
    """Ok(value) or Failed(kind, cause)."""
    ok: bool
    value: Any = None
    kind: Optional[FailureKind] = None
    cause: Optional[BaseException] = None

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, kind: FailureKind, cause: BaseException) -> "Outcome":
        return cls(ok=False, kind=kind, cause=cause)

    @classmethod
    def from_exception(cls, error: BaseException) -> "Outcome":
        return cls.failed(FailureKind.classify(error), error)

    def unwrap(self) -> Any:
        """Return the value, or raise the cause of a failed outcome."""
        if not self.ok:
            raise self.cause
        return self.value
