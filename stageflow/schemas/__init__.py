"""
stageflow.schemas - Data structures for the workflow engine.

OrchestrationSpecification -> Stage -> Job -> JobExecutionContext -> RunRecord

Lifecycle:
1. OrchestrationSpecification: Static, read-only workflow tree (stages of jobs)
2. JobExecutionContext: Built per dispatch (job + root meta + correlation id)
3. RetryPolicy: Built per dispatch from the job's retry fields
4. Outcome: Explicit Ok/Failed result of a stage fan-in
5. RunRecord: Status of a top-level run or nested sub-workflow instance
"""

from .specification import (
    OrchestrationSpecification,
    Stage,
    Job,
    WaitForEvent,
    WaitForEventAction,
    EventResponse,
)
from .context import (
    JobExecutionContext,
    RetryPolicy,
)
from .outcome import (
    Outcome,
    FailureKind,
)
from .run_record import (
    RunRecord,
    RunStatus,
    RunId,
)

__all__ = [
    # Specification
    "OrchestrationSpecification",
    "Stage",
    "Job",
    "WaitForEvent",
    "WaitForEventAction",
    "EventResponse",
    # Dispatch
    "JobExecutionContext",
    "RetryPolicy",
    # Outcome
    "Outcome",
    "FailureKind",
    # Run Record
    "RunRecord",
    "RunStatus",
    "RunId",
]
