"""
Built-in leaf activities.

- Delay: waits parameters["DelayMilliseconds"] milliseconds
- EchoJobName: returns a greeting naming the job
- Skip: does nothing; useful while sketching a specification's structure
"""

import asyncio
import logging

from stageflow.errors import PermanentError
from stageflow.schemas import JobExecutionContext

logger = logging.getLogger(__name__)

DELAY_PARAMETER = "DelayMilliseconds"
ECHO_DELAY_SECONDS = 0.1


async def delay(context: JobExecutionContext) -> None:
    """Wait for the number of milliseconds given by DelayMilliseconds."""
    job = context.job
    value = context.parameters.get(DELAY_PARAMETER)
    if value is None:
        logger.warning(
            f"[JOB: {job.name}] - No delay parameter found in job parameters, "
            f"please specify using `{DELAY_PARAMETER}` as key."
        )
        return

    try:
        delay_ms = int(value)
    except ValueError as e:
        raise PermanentError(
            f"[JOB: {job.name}] - {DELAY_PARAMETER} must be an integer, got {value!r}"
        ) from e

    logger.info(f"[JOB: {job.name}] - Adding delay of: {delay_ms} ms.")
    await asyncio.sleep(max(delay_ms, 0) / 1000)


async def echo_job_name(context: JobExecutionContext) -> str:
    logger.info(f"Saying hello from: {context.job.name}.")
    await asyncio.sleep(ECHO_DELAY_SECONDS)
    return f"Hello {context.job.name}!"


def skip(context: JobExecutionContext) -> None:
    logger.info(f"Running: {context.job.name}.")


BUILTIN_ACTIVITIES = {
    "Delay": delay,
    "EchoJobName": echo_job_name,
    "Skip": skip,
}
