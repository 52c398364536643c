"""
Event Gate - waits for an external event in front of a stage.

State machine:

    IDLE -> WAITING_FOR_EVENT -> CONTINUING            (event: Continue)
                              -> CANCELLING            (event: Cancel)
                              -> TIMED_OUT_CONTINUING  (timer, ContinueOrchestration)
                              -> TIMED_OUT_FAILING     (timer, Fail -> EventWaitTimeout)

The event wait races a timer armed for now + timeout_hours. The timer is
cancelled on every exit path. A timeout with timeout_action=Fail is fatal
and is not subject to the stage's continue_on_error.
"""

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from stageflow.errors import EventWaitTimeout
from stageflow.schemas import EventResponse, WaitForEvent, WaitForEventAction
from stageflow.substrate import OrchestrationContext

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    IDLE = "idle"
    WAITING_FOR_EVENT = "waiting_for_event"
    CONTINUING = "continuing"
    CANCELLING = "cancelling"
    TIMED_OUT_CONTINUING = "timed_out_continuing"
    TIMED_OUT_FAILING = "timed_out_failing"

    @property
    def runs_stage(self) -> bool:
        """True if the stage body should run after the gate."""
        return self in (GateState.CONTINUING, GateState.TIMED_OUT_CONTINUING)


CANCELLATION_PREFIX = "Cancelled by user issuing event:"


def cancellation_notice(event_name: str) -> str:
    return f"{CANCELLATION_PREFIX} {event_name} with 'Cancel'"


def is_cancellation_notice(status: Optional[str]) -> bool:
    return bool(status) and status.startswith(CANCELLATION_PREFIX)


class EventGate:
    """
    One-shot gate for a single stage.

    Usage:
        gate = EventGate(context, stage.wait_for_event)
        state = await gate.wait()
        if state.runs_stage:
            ...
    """

    def __init__(self, context: OrchestrationContext, wait_for_event: WaitForEvent):
        self._context = context
        self._wait = wait_for_event
        self.state = GateState.IDLE

    async def wait(self) -> GateState:
        """
        Race the event against the timer and resolve the gate.

        Returns:
            CONTINUING, CANCELLING or TIMED_OUT_CONTINUING

        Raises:
            EventWaitTimeout: If the timer fired and timeout_action is Fail
        """
        context = self._context
        instance_id = context.instance_id
        event_name = self._wait.event_name

        deadline = context.current_time() + timedelta(hours=self._wait.timeout_hours)
        timer = context.create_timer(deadline)
        try:
            logger.info(f"{instance_id}: Waiting for event: {event_name}.")
            event = context.wait_for_external_event(event_name)
            context.set_custom_status(f"Waiting for event: {event_name}")
            self.state = GateState.WAITING_FOR_EVENT

            try:
                await asyncio.wait({event, timer.task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not event.done():
                    event.cancel()

            if event.done() and not event.cancelled():
                timer.cancel()
                return self._on_event(event.result())
            return self._on_timeout()
        finally:
            timer.cancel()

    def _on_event(self, payload) -> GateState:
        instance_id = self._context.instance_id
        event_name = self._wait.event_name
        response = EventResponse.from_string(payload)

        if response == EventResponse.CONTINUE:
            logger.info(f"{instance_id}: Received event: {event_name}. Continuing...")
            self.state = GateState.CONTINUING
        else:
            logger.warning(
                f"{instance_id}: Cancelling orchestration, event: {event_name} set to 'Cancel'."
            )
            self._context.set_custom_status(cancellation_notice(event_name))
            self.state = GateState.CANCELLING
        return self.state

    def _on_timeout(self) -> GateState:
        instance_id = self._context.instance_id
        event_name = self._wait.event_name
        logger.warning(f"{instance_id}: Time expired waiting for event: {event_name}.")

        if self._wait.timeout_action == WaitForEventAction.CONTINUE_ORCHESTRATION:
            logger.warning(
                f"{instance_id}: Continuing with orchestration, "
                f"timeout action set to 'ContinueOrchestration'."
            )
            self.state = GateState.TIMED_OUT_CONTINUING
            return self.state

        self.state = GateState.TIMED_OUT_FAILING
        raise EventWaitTimeout(instance_id, event_name)
