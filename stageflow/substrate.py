"""
Substrate - the primitives the scheduling engine consumes.

The orchestrator, stage runner, event gate, dispatcher and sub-workflow
runner are written only against OrchestrationContext. Whatever hosts them
(see stageflow.engine for the in-process host) supplies:

- invoke_activity: call a named leaf activity under a retry policy
- invoke_subworkflow: start an isolated nested workflow instance
- create_timer: a cancellable timer firing at a logical deadline
- wait_for_external_event: resolve when a named signal is delivered
- set_custom_status: best-effort status visible to observers
- new_correlation_suffix: deterministic unique token per instance
- current_time: logical clock

Handles are asyncio awaitables. A handle that loses a race must be released
explicitly: timers through Timer.cancel().
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from stageflow.schemas import JobExecutionContext, RetryPolicy


class Timer:
    """
    A cancellable timer handle.

    Awaiting the timer (or its task) resolves at the deadline unless the
    timer is cancelled first.
    """

    def __init__(self, task: "asyncio.Task[None]", deadline: datetime):
        self._task = task
        self.deadline = deadline

    @property
    def task(self) -> "asyncio.Task[None]":
        return self._task

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def cancel(self) -> None:
        """Release the timer. No-op once it has fired."""
        if not self._task.done():
            self._task.cancel()

    def __await__(self):
        return self._task.__await__()


class OrchestrationContext(ABC):
    """
    Abstract handle on one running workflow instance.

    Each top-level run and each nested sub-workflow gets its own context
    with its own instance id and custom status.
    """

    @property
    @abstractmethod
    def instance_id(self) -> str:
        """Identifier of this workflow instance."""
        pass

    @abstractmethod
    def get_input(self) -> Any:
        """Input the instance was started with."""
        pass

    @abstractmethod
    def invoke_activity(
        self,
        name: str,
        context: JobExecutionContext,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "asyncio.Task[Any]":
        """
        Call a named leaf activity.

        Returns:
            Handle resolving to the activity result, or failing with
            JobFailure once the retry policy is exhausted
        """
        pass

    @abstractmethod
    def invoke_subworkflow(
        self,
        name: str,
        instance_id: str,
        input: Any,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "asyncio.Task[Any]":
        """
        Start an isolated nested workflow instance.

        Returns:
            Handle resolving to the nested workflow's result
        """
        pass

    @abstractmethod
    def create_timer(self, deadline: datetime) -> Timer:
        """Arm a timer for a logical deadline (see current_time)."""
        pass

    @abstractmethod
    def wait_for_external_event(self, name: str) -> "asyncio.Future[Any]":
        """Handle resolving to the payload of the next `name` event."""
        pass

    @abstractmethod
    def set_custom_status(self, text: str) -> None:
        """Report a status string to observers. Never blocks."""
        pass

    @abstractmethod
    def new_correlation_suffix(self) -> str:
        """Unique token, deterministic for a given instance and call order."""
        pass

    @abstractmethod
    def current_time(self) -> datetime:
        """Logical, replay-consistent current time (timezone-aware UTC)."""
        pass
