"""
Job Dispatcher - turns one job node into one asynchronous handle.

Leaf jobs invoke the activity named by job.function with a fresh
JobExecutionContext. Composite jobs start the sub-workflow runner as an
isolated nested instance "{correlation_id}-{suffix}", passing the job and the
inherited metadata; the runner rebuilds contexts itself.

Both paths attach a RetryPolicy built from the job's retry fields.
Dispatch itself never fails: failures surface through the returned handle.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from stageflow.schemas import Job, JobExecutionContext, RetryPolicy
from stageflow.substrate import OrchestrationContext

logger = logging.getLogger(__name__)

SUB_WORKFLOW_NAME = "SubWorkflowRunner"


@dataclass(frozen=True)
class SubWorkflowInput:
    """Input of a nested sub-workflow instance."""
    job: Job
    meta: Optional[Mapping[str, str]] = field(default=None)


def build_retry_policy(job: Job) -> RetryPolicy:
    """First retry after retry_timeout_seconds, up to max_retry_count attempts, with the job's back-off."""
    return RetryPolicy.for_job(job)


def child_instance_id(context: OrchestrationContext, correlation_id: str) -> str:
    """Derive the instance id of a nested sub-workflow."""
    return f"{correlation_id}-{context.new_correlation_suffix()}"


def dispatch(
    context: OrchestrationContext,
    job: Job,
    meta: Optional[Mapping[str, str]],
    correlation_id: str,
) -> "asyncio.Task[Any]":
    """
    Dispatch one job.

    Args:
        context: Substrate handle of the calling instance
        job: The job to run
        meta: Metadata inherited from the root specification
        correlation_id: Run id, or the id of the enclosing sub-workflow

    Returns:
        Handle resolving when the job (and, for composite jobs, its whole
        subtree) completes
    """
    retry_policy = build_retry_policy(job)

    if job.is_composite:
        instance_id = child_instance_id(context, correlation_id)
        logger.info(
            f"{correlation_id}: Adding sub-workflow {instance_id} for job: '{job.name}' "
            f"({len(job.jobs)} child jobs)."
        )
        return context.invoke_subworkflow(
            SUB_WORKFLOW_NAME,
            instance_id,
            SubWorkflowInput(job=job, meta=meta),
            retry_policy,
        )

    logger.info(f"{correlation_id}: Adding job: '{job.name}'.")
    job_context = JobExecutionContext.build(job, meta, correlation_id)
    return context.invoke_activity(job.function, job_context, retry_policy)
