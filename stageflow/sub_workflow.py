"""
Sub-Workflow Runner - expands a composite job.

Runs as its own nested instance. Its instance id is the correlation id of
everything it dispatches:

1. Dispatch every child job concurrently
2. Report "waiting for N jobs"
3. Await all children (fan-in barrier; any failure fails the barrier
   once every child has resolved)
4. Report "all jobs complete"
5. Invoke the composite job's own activity
6. Return a completion marker

A child failure aborts the runner before step 5 and surfaces as
SubWorkflowFailure to the enclosing dispatcher's handle.
"""

import asyncio
import logging

from stageflow.dispatcher import SubWorkflowInput, dispatch
from stageflow.errors import ConfigurationError, SubWorkflowFailure
from stageflow.schemas import JobExecutionContext
from stageflow.substrate import OrchestrationContext

logger = logging.getLogger(__name__)


async def run_sub_workflow(context: OrchestrationContext) -> str:
    """
    Hosted workflow function for composite jobs.

    Returns:
        "{correlation_id}: Sub-workflow complete"

    Raises:
        ConfigurationError: If started without a SubWorkflowInput
        SubWorkflowFailure: If any child job failed
    """
    sub_input = context.get_input()
    if not isinstance(sub_input, SubWorkflowInput) or sub_input.job is None:
        raise ConfigurationError("Sub-workflow input cannot be null")

    job = sub_input.job
    meta = sub_input.meta
    correlation_id = context.instance_id

    logger.info(f"{correlation_id}: Sub-workflow handling request for: '{job.name}'.")
    logger.info(f"{correlation_id}: Job sub job count: '{len(job.jobs)}'.")

    handles = [dispatch(context, child, meta, correlation_id) for child in job.jobs]

    context.set_custom_status(f"{correlation_id}: Waiting for {len(handles)} jobs to complete.")

    results = await asyncio.gather(*handles, return_exceptions=True)
    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        for failure in failures[1:]:
            logger.warning(f"{correlation_id}: Additional child failure: {failure}")
        raise SubWorkflowFailure(job.name, correlation_id, failures[0]) from failures[0]

    context.set_custom_status(f"{correlation_id}: All jobs complete.")

    # The composite job's own work runs after all of its children. It is
    # retried through the sub-workflow's own retry policy.
    job_context = JobExecutionContext.build(job, meta, correlation_id)
    await context.invoke_activity(job.function, job_context)

    return f"{correlation_id}: Sub-workflow complete"
