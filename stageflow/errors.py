"""
Error classes for stageflow execution.

These error types enable retry classification at the activity boundary:
- TransientError: Safe to retry (rate limits, network issues, temporary failures)
- PermanentError: Do not retry (invalid input, missing resources)

Scheduling errors raised by the engine:
- ConfigurationError: Missing/invalid specification; fatal before any stage runs
- JobFailure: A leaf activity exhausted its retry budget
- SubWorkflowFailure: A child of a composite job failed; the composite's own
  activity is skipped
- StageTimeout: The stage timer fired before all stage jobs resolved
- EventWaitTimeout: The event gate timed out with timeout_action=Fail

Manual cancellation (an external 'Cancel' event) is not an error. It ends
the run early with a cancellation notice as its custom status.
"""

from typing import Optional


class StageflowError(Exception):
    """Base exception for stageflow."""
    pass


class TransientError(StageflowError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded
    - Network timeout
    - Service temporarily unavailable

    The engine retries activities that raise TransientError (or any other
    non-permanent exception) according to the job's retry policy.
    """
    pass


class PermanentError(StageflowError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid job parameters
    - Unknown activity
    - Authorization failed

    The engine fails the job immediately, ignoring remaining attempts.
    """
    pass


class ConfigurationError(StageflowError):
    """Raised when a specification or job input is missing or invalid."""
    pass


class ActivityNotFoundError(PermanentError):
    """Raised when a job names a function no activity is registered for."""
    pass


class RunNotFoundError(StageflowError):
    """Raised when a run id is not known to the engine or store."""
    pass


class JobFailure(StageflowError):
    """Raised when a leaf activity exhausts its retry budget."""

    def __init__(self, job_name: str, attempts: int, cause: Optional[BaseException] = None):
        self.job_name = job_name
        self.attempts = attempts
        self.cause = cause
        reason = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"Job '{job_name}' failed after {attempts} attempt(s): {reason}")


class SubWorkflowFailure(StageflowError):
    """Raised when a composite job's fan-in barrier sees a failed child."""

    def __init__(self, job_name: str, correlation_id: str, cause: Optional[BaseException] = None):
        self.job_name = job_name
        self.correlation_id = correlation_id
        self.cause = cause
        super().__init__(
            f"{correlation_id}: Sub-workflow for job '{job_name}' failed: {cause}"
        )


class StageTimeout(StageflowError):
    """Raised when a stage's jobs do not all resolve before its timer fires."""

    def __init__(self, instance_id: str, stage_name: str, timeout_minutes: float):
        self.instance_id = instance_id
        self.stage_name = stage_name
        self.timeout_minutes = timeout_minutes
        super().__init__(
            f"{instance_id}: TIMEOUT for stage: {stage_name} ({timeout_minutes} min)"
        )


class EventWaitTimeout(StageflowError):
    """Raised when the event gate times out and the stage policy is Fail."""

    def __init__(self, instance_id: str, event_name: str):
        self.instance_id = instance_id
        self.event_name = event_name
        super().__init__(
            f"{instance_id}: Time expired waiting for event: {event_name}. "
            f"Terminating orchestration."
        )
