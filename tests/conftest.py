import asyncio
import inspect
from datetime import datetime, timezone

import pytest

from stageflow.activities import ActivityRegistry
from stageflow.activities.builtin import BUILTIN_ACTIVITIES
from stageflow.errors import PermanentError, TransientError
from stageflow.schemas import JobExecutionContext
from stageflow.substrate import OrchestrationContext, Timer

# Real seconds per logical second used by scheduling tests.
# A 10s retry back-off becomes 10ms, a 1h event timeout 3.6s.
FAST_TIME_SCALE = 1e-3


class ActivityRecorder:
    """
    Records every activity invocation in call order.

    Every built-in is wrapped, plus a "Record" function that only records.
    Failures are injected per job name:
        fail_jobs: always raise TransientError
        permanent_jobs: raise PermanentError
        flaky: job name -> number of leading attempts that fail
        slow: job name -> seconds to sleep before finishing
    """

    def __init__(self):
        self.calls: list[JobExecutionContext] = []
        self.completed: list[str] = []
        self.fail_jobs: set[str] = set()
        self.permanent_jobs: set[str] = set()
        self.flaky: dict[str, int] = {}
        self.slow: dict[str, float] = {}

    def names(self) -> list[str]:
        return [c.job.name for c in self.calls]

    def count(self, job_name: str) -> int:
        return self.names().count(job_name)

    def contexts_for(self, job_name: str) -> list[JobExecutionContext]:
        return [c for c in self.calls if c.job.name == job_name]

    async def _invoke(self, context: JobExecutionContext, fn=None):
        name = context.job.name
        self.calls.append(context)

        if name in self.slow:
            await asyncio.sleep(self.slow[name])
        if name in self.permanent_jobs:
            raise PermanentError(f"{name} cannot run")
        if name in self.fail_jobs:
            raise TransientError(f"{name} failed")
        if self.flaky.get(name, 0) > 0:
            self.flaky[name] -= 1
            raise TransientError(f"{name} flaked")

        result = None
        if fn is not None:
            result = fn(context)
            if inspect.isawaitable(result):
                result = await result
        self.completed.append(name)
        return result

    def registry(self) -> ActivityRegistry:
        registry = ActivityRegistry()
        for function, fn in BUILTIN_ACTIVITIES.items():
            registry.register(function, self._wrap(fn))
        registry.register("Record", self._wrap(None))
        return registry

    def _wrap(self, fn):
        async def activity(context: JobExecutionContext):
            return await self._invoke(context, fn)
        return activity


@pytest.fixture
def recorder() -> ActivityRecorder:
    return ActivityRecorder()


@pytest.fixture
def activities(recorder) -> ActivityRegistry:
    return recorder.registry()


@pytest.fixture
def time_scale() -> float:
    return FAST_TIME_SCALE


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep STAGEFLOW_HOME and its env overrides away from the real user config."""
    monkeypatch.setenv("STAGEFLOW_HOME", str(tmp_path / "stageflow_home"))
    monkeypatch.delenv("STAGEFLOW_LOG_LEVEL", raising=False)
    monkeypatch.delenv("STAGEFLOW_TIME_SCALE", raising=False)


class FakeContext(OrchestrationContext):
    """
    Scripted OrchestrationContext for testing scheduling components alone.

    Activity and sub-workflow handles resolve immediately unless the job
    name is in `failures` (resolve with that exception) or `hanging`
    (never resolve). Timers fire at once when `timers_fire` is set and
    otherwise never fire on their own.
    """

    def __init__(self, instance_id="run-1", input=None, timers_fire=False, events=None):
        self._instance_id = instance_id
        self._input = input
        self.timers_fire = timers_fire
        self.preset_events = dict(events or {})
        self.failures: dict[str, BaseException] = {}
        self.hanging: set[str] = set()
        self.activity_calls: list[tuple] = []
        self.subworkflow_calls: list[tuple] = []
        self.statuses: list[str] = []
        self.timers: list[Timer] = []
        self.event_futures: dict[str, asyncio.Future] = {}
        self._suffix = 0

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def get_input(self):
        return self._input

    def _handle(self, job_name: str, result):
        future = asyncio.get_running_loop().create_future()
        if job_name in self.hanging:
            return future
        if job_name in self.failures:
            future.set_exception(self.failures[job_name])
        else:
            future.set_result(result)
        return future

    def invoke_activity(self, name, context, retry_policy=None):
        self.activity_calls.append((name, context, retry_policy))
        return self._handle(context.job.name, f"{name}:{context.job.name}")

    def invoke_subworkflow(self, name, instance_id, input, retry_policy=None):
        self.subworkflow_calls.append((name, instance_id, input, retry_policy))
        return self._handle(input.job.name, f"{instance_id}: Sub-workflow complete")

    def create_timer(self, deadline):
        delay = 0 if self.timers_fire else 3600
        timer = Timer(asyncio.ensure_future(asyncio.sleep(delay)), deadline)
        self.timers.append(timer)
        return timer

    def wait_for_external_event(self, name):
        future = asyncio.get_running_loop().create_future()
        if name in self.preset_events:
            future.set_result(self.preset_events[name])
        self.event_futures[name] = future
        return future

    def set_custom_status(self, text):
        self.statuses.append(text)

    def new_correlation_suffix(self):
        self._suffix += 1
        return f"s{self._suffix}"

    def current_time(self):
        return datetime(2024, 1, 1, tzinfo=timezone.utc)

    async def settle(self):
        """Let cancelled timers finish cancelling."""
        await asyncio.sleep(0)
        await asyncio.sleep(0)


@pytest.fixture
def fake_context():
    return FakeContext
