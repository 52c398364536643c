"""
Stage Runner - executes one stage body.

1. Arm a cancellable stage timer for now + timeout_minutes
2. Dispatch every top-level job concurrently (root meta, run correlation id)
3. Report stage.state as custom status
4. Race "all jobs resolved" against the timer
5. Turn the result into an Outcome and apply the containment policy:
   - continue_on_error: log a warning, proceed as if the stage succeeded
   - otherwise: set custom status "failed" and re-raise

A stage timeout stops waiting; it does not interrupt in-flight activities.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from stageflow.dispatcher import dispatch
from stageflow.errors import StageTimeout
from stageflow.schemas import Outcome, Stage
from stageflow.substrate import OrchestrationContext

logger = logging.getLogger(__name__)

FAILED_STATUS = "failed"


async def _fan_in(handles: list["asyncio.Future[Any]"]) -> list[Any]:
    """Wait for every handle, then raise the first failure if any."""
    results = await asyncio.gather(*handles, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


async def _run_jobs(
    context: OrchestrationContext,
    stage: Stage,
    meta: Optional[Mapping[str, str]],
) -> Outcome:
    instance_id = context.instance_id
    deadline = context.current_time() + timedelta(minutes=stage.timeout_minutes)
    timer = context.create_timer(deadline)
    try:
        handles = [dispatch(context, job, meta, instance_id) for job in stage.jobs]

        context.set_custom_status(stage.state)

        all_done = asyncio.ensure_future(_fan_in(handles))
        await asyncio.wait({all_done, timer.task}, return_when=asyncio.FIRST_COMPLETED)

        if all_done.done():
            timer.cancel()
            logger.info(f"{instance_id}: Stage complete: '{stage.name}'.")
            return Outcome.success(all_done.result())

        # In-flight jobs keep running; their results are no longer awaited
        all_done.add_done_callback(_discard_result)
        logger.warning(f"{instance_id}: TIMEOUT for stage: {stage.name}")
        raise StageTimeout(instance_id, stage.name, stage.timeout_minutes)
    except Exception as e:
        return Outcome.from_exception(e)
    finally:
        timer.cancel()


def _discard_result(future: "asyncio.Future[Any]") -> None:
    if not future.cancelled():
        future.exception()


async def run_stage(
    context: OrchestrationContext,
    stage: Stage,
    meta: Optional[Mapping[str, str]],
) -> Outcome:
    """
    Run one stage body and apply its containment policy.

    Args:
        context: Substrate handle of the top-level run
        stage: The stage to run
        meta: Root specification metadata, cascaded to every job

    Returns:
        Outcome.success with the job results, or a failed Outcome that was
        contained because stage.continue_on_error is set

    Raises:
        The failure cause (JobFailure, SubWorkflowFailure, StageTimeout, ...)
        when the stage is not allowed to continue on error
    """
    instance_id = context.instance_id
    outcome = await _run_jobs(context, stage, meta)

    if outcome.ok:
        return outcome

    if stage.continue_on_error:
        logger.warning(
            f"{instance_id}: ContinuingOnError for stage: {stage.name}. Continuing orchestration. "
            f"Stage non-fatal {outcome.kind.value}, downgrading to warning: {outcome.cause}"
        )
        return outcome

    logger.error(
        f"{instance_id}: Fatal Error for stage: {stage.name}. Terminating orchestration. "
        f"Stage fatal {outcome.kind.value}: {outcome.cause}",
        exc_info=outcome.cause,
    )
    context.set_custom_status(FAILED_STATUS)
    raise outcome.cause
