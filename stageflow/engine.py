"""
InProcessEngine - asyncio host for stageflow workflows.

The engine implements the substrate primitives (see stageflow.substrate)
inside one event loop:

- Workflow instances (top-level runs and nested sub-workflows) are tasks
  with their own instance id, input, custom status and event buffers
- Activities run as tasks; coroutine activities are awaited, plain
  functions run in a worker thread
- Retry policies are applied around every activity call and every nested
  workflow invocation; PermanentError stops retrying immediately
- Timers are cancellable sleeps against a logical clock. time_scale (real
  seconds per logical second) compresses long stage and event timeouts
- External events delivered before a run waits for them are buffered per
  run and name, first-in first-out
- Every status change is written to the RunStore

Limitations:
- Not durable: a process restart loses in-flight runs (no history replay)
- Events must be sent from the engine's event loop
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from stageflow.activities import ActivityRegistry
from stageflow.dispatcher import SUB_WORKFLOW_NAME
from stageflow.errors import (
    ConfigurationError,
    JobFailure,
    PermanentError,
    RunNotFoundError,
)
from stageflow.orchestrator import ORCHESTRATOR_NAME, run_orchestrator
from stageflow.run_store import InMemoryRunStore, RunStore, generate_ulid
from stageflow.schemas import (
    EventResponse,
    JobExecutionContext,
    OrchestrationSpecification,
    RetryPolicy,
    RunRecord,
    RunStatus,
)
from stageflow.sub_workflow import run_sub_workflow
from stageflow.substrate import OrchestrationContext, Timer

logger = logging.getLogger(__name__)

# Type alias for hosted workflow functions
WorkflowFn = Callable[[OrchestrationContext], Awaitable[Any]]

_SUFFIX_NAMESPACE = uuid.UUID("6f1c0a52-3d1e-4a8f-9a57-2f3e8b1d4c90")


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ScaledClock:
    """
    Logical clock running 1/time_scale times faster than real time.

    With time_scale=0.001 a logical hour passes in 3.6 real seconds.
    """

    def __init__(self, time_scale: float = 1.0):
        if time_scale <= 0:
            raise ConfigurationError(f"time_scale must be > 0, got {time_scale}")
        self.time_scale = time_scale
        self._origin = _utcnow()
        self._monotonic_origin = time.monotonic()

    def now(self) -> datetime:
        elapsed = (time.monotonic() - self._monotonic_origin) / self.time_scale
        return self._origin + timedelta(seconds=elapsed)

    def real_seconds(self, logical_seconds: float) -> float:
        return max(logical_seconds, 0.0) * self.time_scale

    def seconds_until(self, deadline: datetime) -> float:
        """Real seconds until a logical deadline."""
        return self.real_seconds((deadline - self.now()).total_seconds())


class _Instance:
    """Bookkeeping for one hosted workflow instance."""

    def __init__(self, record: RunRecord, input: Any):
        self.record = record
        self.input = input
        self.task: Optional["asyncio.Task[Any]"] = None
        self.buffered_events: dict[str, deque] = defaultdict(deque)
        self.event_waiters: dict[str, deque] = defaultdict(deque)
        self.suffix_counter = 0


class InProcessContext(OrchestrationContext):
    """OrchestrationContext backed by an InProcessEngine."""

    def __init__(self, engine: "InProcessEngine", instance: _Instance):
        self._engine = engine
        self._instance = instance

    @property
    def instance_id(self) -> str:
        return self._instance.record.run_id

    def get_input(self) -> Any:
        return self._instance.input

    def invoke_activity(
        self,
        name: str,
        context: JobExecutionContext,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "asyncio.Task[Any]":
        engine = self._engine

        async def attempt() -> Any:
            fn = engine.activities.get(name)
            if inspect.iscoroutinefunction(fn):
                return await fn(context)
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(engine.worker_pool, fn, context)
            if inspect.isawaitable(result):
                result = await result
            return result

        label = f"{context.correlation_id}: Job '{context.job.name}'"
        return engine.spawn(
            engine.call_with_retry(
                label,
                attempt,
                retry_policy,
                on_exhausted=lambda error, attempts: JobFailure(context.job.name, attempts, error),
            ),
            name=f"activity:{name}:{context.job.name}",
        )

    def invoke_subworkflow(
        self,
        name: str,
        instance_id: str,
        input: Any,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "asyncio.Task[Any]":
        engine = self._engine
        parent_id = self.instance_id
        job = getattr(input, "job", None)
        display_name = getattr(job, "name", "") or name

        async def attempt() -> Any:
            instance = engine.start_instance(
                name, instance_id, input, display_name=display_name, parent_id=parent_id,
            )
            return await instance.task

        return engine.spawn(
            engine.call_with_retry(f"{parent_id}: Sub-workflow {instance_id}", attempt, retry_policy),
            name=f"subworkflow:{instance_id}",
        )

    def create_timer(self, deadline: datetime) -> Timer:
        engine = self._engine

        async def sleep_until() -> None:
            await asyncio.sleep(engine.clock.seconds_until(deadline))

        task = engine.spawn(sleep_until(), name=f"timer:{self.instance_id}")
        return Timer(task, deadline)

    def wait_for_external_event(self, name: str) -> "asyncio.Future[Any]":
        future = asyncio.get_running_loop().create_future()
        buffered = self._instance.buffered_events[name]
        if buffered:
            future.set_result(buffered.popleft())
        else:
            self._instance.event_waiters[name].append(future)
        return future

    def set_custom_status(self, text: str) -> None:
        record = self._instance.record
        record.custom_status = text
        self._engine.store.save_run(record)

    def new_correlation_suffix(self) -> str:
        self._instance.suffix_counter += 1
        return str(uuid.uuid5(
            _SUFFIX_NAMESPACE, f"{self.instance_id}:{self._instance.suffix_counter}"
        ))

    def current_time(self) -> datetime:
        return self._engine.clock.now()


class InProcessEngine:
    """
    Hosts workflow runs inside the current event loop.

    Usage:
        engine = InProcessEngine(activities=ActivityRegistry.create_default())
        run_id = await engine.start_run(specification)
        await engine.send_event(run_id, "Approve", "Continue")
        record = await engine.wait_for_run(run_id)
        await engine.shutdown()
    """

    def __init__(
        self,
        activities: Optional[ActivityRegistry] = None,
        store: Optional[RunStore] = None,
        time_scale: float = 1.0,
    ):
        """
        Initialize the engine.

        Args:
            activities: Leaf activities (defaults to the built-ins)
            store: RunStore for status records (defaults to in-memory)
            time_scale: Real seconds per logical second for timers and
                retry back-off (1.0 = real time)
        """
        self.activities = activities if activities is not None else ActivityRegistry.create_default()
        self.store = store if store is not None else InMemoryRunStore()
        self.clock = ScaledClock(time_scale)
        self._workflows: dict[str, WorkflowFn] = {
            ORCHESTRATOR_NAME: run_orchestrator,
            SUB_WORKFLOW_NAME: run_sub_workflow,
        }
        self._instances: dict[str, _Instance] = {}
        self._tasks: set["asyncio.Task[Any]"] = set()
        # Sync activities; released without waiting on shutdown
        self.worker_pool = ThreadPoolExecutor(thread_name_prefix="stageflow-activity")

    # ------------------------------------------------------------------
    # Client surface
    # ------------------------------------------------------------------

    async def start_run(
        self,
        specification: Optional[OrchestrationSpecification],
        run_id: Optional[str] = None,
    ) -> str:
        """
        Start a top-level run.

        Args:
            specification: The workflow tree to execute
            run_id: Explicit run id (default "{instance_id_prefix}-{ulid}")

        Returns:
            The run id

        Raises:
            ConfigurationError: If the specification is missing or the run id
                is already in use by a running instance
        """
        if specification is None:
            raise ConfigurationError("specification")

        run_id = run_id or f"{specification.instance_id_prefix}-{generate_ulid()}"
        existing = self._instances.get(run_id)
        if existing is not None and not existing.record.status.is_terminal:
            raise ConfigurationError(f"Run already in progress: {run_id}")

        logger.info(f"Received request to run '{specification.name}' as {run_id}.")
        instance = self.start_instance(
            ORCHESTRATOR_NAME, run_id, specification, display_name=specification.name,
        )
        instance.task.add_done_callback(_consume_exception)
        return run_id

    async def send_event(self, run_id: str, event_name: str, payload: "str | EventResponse") -> None:
        """
        Deliver an external event to a run.

        Raises:
            RunNotFoundError: If the run is not hosted by this engine
            ConfigurationError: If the payload is not Continue or Cancel
        """
        response = EventResponse.from_string(payload)
        instance = self._instances.get(run_id)
        if instance is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        if instance.record.status.is_terminal:
            logger.warning(f"{run_id}: Dropping event {event_name}, run is {instance.record.status.value}.")
            return

        waiters = instance.event_waiters[event_name]
        while waiters:
            future = waiters.popleft()
            if not future.done():
                future.set_result(response)
                return
        instance.buffered_events[event_name].append(response)

    def get_status(self, run_id: str) -> Optional[RunRecord]:
        """Current RunRecord of a run or nested instance."""
        return self.store.get_run(run_id)

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunRecord:
        """
        Wait until a run reaches a terminal status.

        Raises:
            RunNotFoundError: If the run is not hosted by this engine
            TimeoutError: If the run is still going after `timeout` seconds
        """
        instance = self._instances.get(run_id)
        if instance is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        await asyncio.wait({instance.task}, timeout=timeout)
        if not instance.task.done():
            raise TimeoutError(f"Run {run_id} still {instance.record.status.value} after {timeout}s")
        return instance.record

    def in_flight(self) -> list[str]:
        """Names of tracked tasks (timers, activities, instances) not yet done."""
        return sorted(t.get_name() for t in self._tasks if not t.done())

    async def shutdown(self) -> None:
        """
        Cancel everything still in flight (timers, abandoned activities).

        Sync activities already running in a worker thread cannot be
        interrupted. Their results are dropped and shutdown does not wait
        for them.
        """
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            logger.debug(f"Cancelling {len(pending)} in-flight task(s): {self.in_flight()}")
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.worker_pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Substrate internals
    # ------------------------------------------------------------------

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> "asyncio.Task[Any]":
        """Create a tracked task."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_instance(
        self,
        workflow: str,
        instance_id: str,
        input: Any,
        display_name: str = "",
        parent_id: Optional[str] = None,
    ) -> _Instance:
        """Create the record and task of a workflow instance."""
        if workflow not in self._workflows:
            raise ConfigurationError(f"Unknown workflow: {workflow}")

        record = RunRecord(
            run_id=instance_id,
            workflow=workflow,
            name=display_name,
            parent_id=parent_id,
            status=RunStatus.RUNNING,
        )
        self.store.save_run(record)

        instance = _Instance(record, input)
        self._instances[instance_id] = instance
        instance.task = self.spawn(
            self._run_instance(workflow, instance),
            name=f"{workflow}:{instance_id}",
        )
        return instance

    async def _run_instance(self, workflow: str, instance: _Instance) -> Any:
        record = instance.record
        context = InProcessContext(self, instance)
        try:
            output = await self._workflows[workflow](context)
        except asyncio.CancelledError:
            self._finish(record, RunStatus.FAILED, error="cancelled")
            raise
        except Exception as e:
            logger.error(f"{record.run_id}: {workflow} failed: {e}")
            self._finish(record, RunStatus.FAILED, error=str(e))
            raise

        self._finish(record, RunStatus.COMPLETED, output=output)
        logger.info(f"{record.run_id}: {workflow} completed.")
        return output

    def _finish(
        self,
        record: RunRecord,
        status: RunStatus,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        record.status = status
        record.output = str(output) if output is not None else None
        record.error = error
        record.completed_at = _utcnow()
        self.store.save_run(record)

    async def call_with_retry(
        self,
        label: str,
        attempt: Callable[[], Awaitable[Any]],
        retry_policy: Optional[RetryPolicy] = None,
        on_exhausted: Optional[Callable[[Exception, int], Exception]] = None,
    ) -> Any:
        """
        Run `attempt` under a retry policy.

        Args:
            label: Prefix for log messages
            attempt: Zero-argument coroutine function performing one attempt
            retry_policy: Policy to apply (default: a single attempt)
            on_exhausted: Maps (last error, attempts made) to the exception
                to raise; by default the last error is re-raised

        Raises:
            The mapped (or original) exception once attempts are exhausted
            or a PermanentError was raised
        """
        policy = retry_policy or RetryPolicy()
        attempt_n = 1

        while True:
            try:
                return await attempt()
            except Exception as e:
                permanent = isinstance(e, PermanentError)
                if permanent or attempt_n >= policy.max_attempts:
                    if permanent:
                        logger.error(f"{label}: Attempt {attempt_n} failed permanently: {e}")
                    elif policy.max_attempts > 1:
                        logger.error(f"{label}: All {policy.max_attempts} attempts failed: {e}")
                    if on_exhausted is None:
                        raise
                    raise on_exhausted(e, attempt_n) from e

                delay = policy.delay_before(attempt_n + 1)
                logger.warning(
                    f"{label}: Attempt {attempt_n}/{policy.max_attempts} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(self.clock.real_seconds(delay))
                attempt_n += 1


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Failures are recorded on the RunRecord; nobody awaits the task itself
    if not task.cancelled():
        task.exception()
