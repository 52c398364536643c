"""
Top-Level Orchestrator - drives one run of an OrchestrationSpecification.

Stages run strictly in specification order, never concurrently. A stage
with a WaitForEvent gate goes through the EventGate first. A 'Cancel'
event stops the loop cleanly; the remaining stages are skipped and the
custom status keeps the cancellation notice instead of "complete".
"""

import logging

from stageflow.errors import ConfigurationError
from stageflow.event_gate import EventGate, GateState
from stageflow.schemas import OrchestrationSpecification
from stageflow.stage_runner import run_stage
from stageflow.substrate import OrchestrationContext

logger = logging.getLogger(__name__)

ORCHESTRATOR_NAME = "Orchestrator"
COMPLETE_STATUS = "complete"


def completion_message(run_id: str, specification_name: str) -> str:
    return f"{run_id}: Completed run of: {specification_name}"


async def run_orchestrator(context: OrchestrationContext) -> str:
    """
    Hosted workflow function for a top-level run.

    Returns:
        "{run_id}: Completed run of: {name}" (also when manually cancelled)

    Raises:
        ConfigurationError: If started without a specification
        EventWaitTimeout: If a gate times out with timeout_action=Fail
        JobFailure, SubWorkflowFailure, StageTimeout: From a stage that
            does not continue on error
    """
    specification = context.get_input()
    if specification is None:
        raise ConfigurationError("specification")
    if not isinstance(specification, OrchestrationSpecification):
        raise ConfigurationError(
            f"Expected an OrchestrationSpecification, got {type(specification).__name__}"
        )

    instance_id = context.instance_id
    logger.info(f"{instance_id}: Orchestrator handling request for: '{specification.name}'.")
    logger.info(f"{instance_id}: Specification stage count: '{len(specification.stages)}'.")

    manually_cancelled = False

    for stage in specification.stages:
        if stage.wait_for_event is not None:
            state = await EventGate(context, stage.wait_for_event).wait()
            if state == GateState.CANCELLING:
                manually_cancelled = True
                break

        await run_stage(context, stage, specification.meta)

    if not manually_cancelled:
        context.set_custom_status(COMPLETE_STATUS)

    return completion_message(instance_id, specification.name)
