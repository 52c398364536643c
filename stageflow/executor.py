"""
Executor - synchronous entry points for running specifications.

execute_specification() starts a run on a fresh InProcessEngine inside its
own event loop, delivers any pre-supplied external events, waits for the
run to reach a terminal status and returns an ExecutionResult.

execute(envelope) is the registry-backed variant: it loads the
specification by id and then delegates to execute_specification().
"""

import asyncio
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from stageflow.activities import ActivityRegistry
from stageflow.engine import InProcessEngine
from stageflow.event_gate import is_cancellation_notice
from stageflow.registry import SpecificationRegistry
from stageflow.run_store import RunStore
from stageflow.schemas import OrchestrationSpecification, RunRecord, RunStatus

# name -> payload, or (name, payload) pairs when one event is sent several times
Events = Union[Mapping[str, str], Iterable[tuple[str, str]]]


class ExecutionResult:
    """Result of executing a specification."""

    def __init__(self, run_record: RunRecord):
        self.run_record = run_record

    @property
    def run_id(self) -> str:
        return self.run_record.run_id

    @property
    def success(self) -> bool:
        return self.run_record.status == RunStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.success and is_cancellation_notice(self.run_record.custom_status)

    @property
    def custom_status(self) -> Optional[str]:
        return self.run_record.custom_status

    @property
    def output(self) -> Optional[str]:
        return self.run_record.output

    @property
    def error(self) -> Optional[str]:
        return self.run_record.error

    def __repr__(self) -> str:
        return (
            f"ExecutionResult(run_id={self.run_id!r}, status={self.run_record.status.value!r}, "
            f"custom_status={self.custom_status!r})"
        )


def _event_items(events: Optional[Events]) -> list[tuple[str, str]]:
    if events is None:
        return []
    if isinstance(events, Mapping):
        return list(events.items())
    return list(events)


async def run_specification(
    specification: OrchestrationSpecification,
    activities: Optional[ActivityRegistry] = None,
    events: Optional[Events] = None,
    store: Optional[RunStore] = None,
    time_scale: float = 1.0,
    run_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ExecutionResult:
    """Async form of execute_specification() for callers already in an event loop."""
    engine = InProcessEngine(activities=activities, store=store, time_scale=time_scale)
    try:
        run_id = await engine.start_run(specification, run_id=run_id)
        for event_name, payload in _event_items(events):
            await engine.send_event(run_id, event_name, payload)
        record = await engine.wait_for_run(run_id, timeout=timeout)
    finally:
        await engine.shutdown()
    return ExecutionResult(record)


def execute_specification(
    specification: OrchestrationSpecification,
    activities: Optional[ActivityRegistry] = None,
    events: Optional[Events] = None,
    store: Optional[RunStore] = None,
    time_scale: float = 1.0,
    run_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ExecutionResult:
    """
    Run a specification to completion.

    Args:
        specification: The workflow tree to execute
        activities: Leaf activities (defaults to the built-ins)
        events: External events to deliver up front; they are buffered
            until the matching gate waits for them
        store: RunStore for status records (defaults to in-memory)
        time_scale: Real seconds per logical second
        run_id: Explicit run id
        timeout: Real seconds to wait before giving up (None = no limit)

    Returns:
        ExecutionResult. A failed run is reported through the result, not
        raised.

    Raises:
        ConfigurationError: If the specification is missing
        TimeoutError: If `timeout` elapsed first
    """
    return asyncio.run(run_specification(
        specification,
        activities=activities,
        events=events,
        store=store,
        time_scale=time_scale,
        run_id=run_id,
        timeout=timeout,
    ))


def _load_specification(envelope: dict[str, Any]) -> OrchestrationSpecification:
    spec_id = envelope["spec_id"]

    registry = envelope.get("registry")
    if registry is None:
        definitions_dir = envelope.get("definitions_dir", Path.cwd() / "definitions")
        registry = SpecificationRegistry(definitions_dir)

    return registry.load(spec_id)


def execute(envelope: dict[str, Any]) -> ExecutionResult:
    """
    Execute a specification from an envelope.

    Envelope schema:
        spec_id: str - The specification id to load and execute
        definitions_dir: Path - Directory containing specifications (optional)
        registry: SpecificationRegistry - Registry to load from (optional)
        activities: ActivityRegistry - Leaf activities (optional)
        events: dict | list - External events to deliver (optional)
        store: RunStore - Store for run records (optional)
        time_scale: float - Real seconds per logical second (optional)
        run_id: str - Explicit run id (optional)

    Raises:
        KeyError: If spec_id is not in envelope
        SpecificationNotFoundError: If spec_id is not found in the registry
    """
    specification = _load_specification(envelope)
    return execute_specification(
        specification,
        activities=envelope.get("activities"),
        events=envelope.get("events"),
        store=envelope.get("store"),
        time_scale=envelope.get("time_scale", 1.0),
        run_id=envelope.get("run_id"),
    )
