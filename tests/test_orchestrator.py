"""End-to-end scheduling tests for the top-level orchestrator.

Runs specifications through execute_specification() with a recording
activity registry and a compressed time scale, and checks ordering,
containment, composite jobs, event gates and metadata cascade.
"""

import pytest

from stageflow.errors import ConfigurationError
from stageflow.executor import execute_specification
from stageflow.orchestrator import completion_message
from stageflow.run_store import InMemoryRunStore
from stageflow.schemas import OrchestrationSpecification, RunStatus


def _spec(*stages, meta=None, name="Test") -> OrchestrationSpecification:
    return OrchestrationSpecification.from_dict({"name": name, "meta": meta, "stages": list(stages)})


def _stage(name, *jobs, **extra) -> dict:
    return {"name": name, "jobs": list(jobs), **extra}


def _job(name, function="Record", *children, **extra) -> dict:
    job = {"name": name, "function": function, **extra}
    if children:
        job["jobs"] = list(children)
    return job


def _gate(event_name="Approve", timeout_hours=0, action="Fail") -> dict:
    return {"eventName": event_name, "timeoutHours": timeout_hours, "timeoutAction": action}


class TestStageOrdering:
    """Stages run strictly in order and a clean run ends "complete"."""

    def test_stages_in_order(self, recorder, activities, time_scale):
        spec = _spec(
            _stage("S1", _job("s1")),
            _stage("S2", _job("s2")),
            _stage("S3", _job("s3")),
        )
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert not result.cancelled
        assert result.custom_status == "complete"
        assert result.output == completion_message(result.run_id, "Test")
        assert recorder.names() == ["s1", "s2", "s3"]

    def test_single_delay_job(self, recorder, activities):
        spec = _spec(_stage(
            "S1",
            _job("A", "Delay", parameters={"DelayMilliseconds": "0"}),
            continueOnError=False, timeoutMinutes=1,
        ))
        result = execute_specification(spec, activities=activities)

        assert result.custom_status == "complete"
        assert recorder.count("A") == 1

    def test_stage_jobs_all_resolve_before_next_stage(self, recorder, activities, time_scale):
        recorder.slow["slow"] = 0.05
        spec = _spec(
            _stage("S1", _job("slow"), _job("fast")),
            _stage("S2", _job("next")),
        )
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert recorder.completed.index("slow") < recorder.completed.index("next")

    def test_empty_stage(self, recorder, activities, time_scale):
        result = execute_specification(
            _spec(_stage("Empty"), _stage("S2", _job("s2"))),
            activities=activities, time_scale=time_scale,
        )
        assert result.custom_status == "complete"
        assert recorder.names() == ["s2"]

    def test_run_id_uses_prefix(self, activities, time_scale):
        spec = OrchestrationSpecification.from_dict({
            "name": "Prefixed",
            "instanceIdPrefix": "nightly",
            "stages": [_stage("S1", _job("a"))],
        })
        result = execute_specification(spec, activities=activities, time_scale=time_scale)
        assert result.run_id.startswith("nightly-")

    def test_missing_specification(self, activities):
        with pytest.raises(ConfigurationError):
            execute_specification(None, activities=activities)


class TestContainment:
    """continue_on_error decides whether a failed stage aborts the run."""

    def test_continue_on_error_keeps_going(self, recorder, activities, time_scale):
        recorder.fail_jobs.add("bad")
        spec = _spec(
            _stage("S1", _job("bad"), _job("good"), continueOnError=True),
            _stage("S2", _job("after")),
        )
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert result.custom_status == "complete"
        assert "after" in recorder.completed

    def test_fatal_failure_aborts(self, recorder, activities, time_scale):
        recorder.fail_jobs.add("bad")
        spec = _spec(
            _stage("S1", _job("bad"), continueOnError=False),
            _stage("S2", _job("after")),
        )
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert not result.success
        assert result.run_record.status == RunStatus.FAILED
        assert result.custom_status == "failed"
        assert "Job 'bad' failed after 1 attempt(s)" in result.error
        assert recorder.count("after") == 0

    def test_siblings_still_resolve_when_one_fails(self, recorder, activities, time_scale):
        recorder.fail_jobs.add("bad")
        recorder.slow["slow"] = 0.05
        result = execute_specification(
            _spec(_stage("S1", _job("bad"), _job("slow"))),
            activities=activities, time_scale=time_scale,
        )
        assert not result.success
        assert "slow" in recorder.completed


class TestRetry:
    """Per-job retry policy."""

    def test_flaky_job_retried(self, recorder, activities, time_scale):
        recorder.flaky["flaky"] = 2
        spec = _spec(_stage("S1", _job("flaky", maxRetryCount=3, retryTimeoutSeconds=10)))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert recorder.count("flaky") == 3

    def test_retries_exhausted(self, recorder, activities, time_scale):
        recorder.flaky["flaky"] = 5
        spec = _spec(_stage("S1", _job("flaky", maxRetryCount=2, retryTimeoutSeconds=1)))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert not result.success
        assert recorder.count("flaky") == 2
        assert "after 2 attempt(s)" in result.error

    def test_permanent_error_not_retried(self, recorder, activities, time_scale):
        recorder.permanent_jobs.add("broken")
        spec = _spec(_stage("S1", _job("broken", maxRetryCount=5, retryTimeoutSeconds=1)))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert not result.success
        assert recorder.count("broken") == 1
        assert "after 1 attempt(s): PermanentError" in result.error

    def test_unknown_function_not_retried(self, activities, time_scale):
        spec = _spec(_stage("S1", _job("ghost", "NoSuchFunction", maxRetryCount=3)))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert not result.success
        assert "ActivityNotFoundError" in result.error


class TestCompositeJobs:
    """Composite jobs expand into nested sub-workflows."""

    def test_child_before_parent(self, recorder, activities):
        spec = _spec(_stage(
            "S1",
            _job("Parent", "Skip", _job("B", "EchoJobName")),
            continueOnError=False, timeoutMinutes=1,
        ))
        result = execute_specification(spec, activities=activities)

        assert result.custom_status == "complete"
        assert recorder.names() == ["B", "Parent"]
        assert recorder.count("Parent") == 1

    def test_failed_child_skips_parent(self, recorder, activities, time_scale):
        recorder.fail_jobs.add("c1")
        spec = _spec(_stage("S1", _job("Parent", "Skip", _job("c1"), _job("c2"))))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert not result.success
        assert recorder.count("Parent") == 0
        assert recorder.count("c2") == 1
        assert "Sub-workflow for job 'Parent' failed" in result.error

    def test_nested_composites(self, recorder, activities, time_scale):
        spec = _spec(_stage(
            "S1",
            _job("Root", "Record", _job("Mid", "Record", _job("Leaf"))),
        ))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert recorder.names() == ["Leaf", "Mid", "Root"]

    def test_correlation_ids(self, recorder, activities, time_scale):
        spec = _spec(_stage("S1", _job("top"), _job("Parent", "Record", _job("B"))))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)
        run_id = result.run_id

        assert recorder.contexts_for("top")[0].correlation_id == run_id
        child_id = recorder.contexts_for("B")[0].correlation_id
        assert child_id.startswith(f"{run_id}-")
        assert recorder.contexts_for("Parent")[0].correlation_id == child_id

    def test_sub_workflow_records(self, activities, time_scale):
        store = InMemoryRunStore()
        spec = _spec(_stage("S1", _job("Parent", "Record", _job("B"))))
        result = execute_specification(spec, activities=activities, store=store, time_scale=time_scale)

        children = store.list_runs(parent_id=result.run_id)
        assert len(children) == 1
        child = store.get_run(children[0])
        assert child.name == "Parent"
        assert child.workflow == "SubWorkflowRunner"
        assert child.status == RunStatus.COMPLETED
        assert child.custom_status == f"{child.run_id}: All jobs complete."
        assert child.output == f"{child.run_id}: Sub-workflow complete"

    def test_sub_workflow_retried_as_a_whole(self, recorder, activities, time_scale):
        recorder.flaky["B"] = 1
        spec = _spec(_stage("S1", _job(
            "Parent", "Record", _job("B"), _job("C"),
            maxRetryCount=2, retryTimeoutSeconds=1,
        )))
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert recorder.count("B") == 2
        assert recorder.count("C") == 2
        assert recorder.count("Parent") == 1


class TestMetadataCascade:
    """Root meta reaches every job context unchanged."""

    def test_meta_at_every_depth(self, recorder, activities, time_scale):
        meta = {"team": "infra", "ticket": "42"}
        spec = _spec(
            _stage("S1", _job("top"), _job("Root", "Record", _job("Mid", "Record", _job("Leaf")))),
            _stage("S2", _job("later")),
            meta=meta,
        )
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert result.success
        assert len(recorder.calls) == 5
        for context in recorder.calls:
            assert dict(context.meta) == meta

    def test_no_meta(self, recorder, activities, time_scale):
        execute_specification(_spec(_stage("S1", _job("a"))), activities=activities, time_scale=time_scale)
        assert dict(recorder.calls[0].meta) == {}


class TestEventGate:
    """Stages gated on external events."""

    def test_continue_event(self, recorder, activities, time_scale):
        spec = _spec(
            _stage("S1", _job("first")),
            _stage("S2", _job("gated"), waitForEvent=_gate(timeout_hours=1)),
        )
        result = execute_specification(
            spec, activities=activities, events={"Approve": "Continue"}, time_scale=time_scale,
        )

        assert result.custom_status == "complete"
        assert recorder.names() == ["first", "gated"]

    def test_cancel_event(self, recorder, activities, time_scale):
        spec = _spec(
            _stage("S1", _job("first")),
            _stage("S2", _job("gated"), waitForEvent=_gate(timeout_hours=1)),
            _stage("S3", _job("third")),
        )
        result = execute_specification(
            spec, activities=activities, events={"Approve": "Cancel"}, time_scale=time_scale,
        )

        assert result.success
        assert result.cancelled
        assert result.custom_status == "Cancelled by user issuing event: Approve with 'Cancel'"
        assert result.output == completion_message(result.run_id, "Test")
        assert recorder.names() == ["first"]

    def test_timeout_continue_runs_stage(self, recorder, activities):
        spec = _spec(_stage(
            "S1", _job("gated"),
            waitForEvent=_gate(timeout_hours=1, action="ContinueOrchestration"), timeoutMinutes=600,
        ))
        result = execute_specification(spec, activities=activities, time_scale=1e-4)

        assert result.custom_status == "complete"
        assert recorder.names() == ["gated"]

    def test_timeout_fail_aborts_before_dispatch(self, recorder, activities, time_scale):
        spec = _spec(
            _stage("S1", _job("first")),
            _stage("S2", _job("gated"), waitForEvent=_gate(timeout_hours=0, action="Fail"), continueOnError=True),
            _stage("S3", _job("third")),
        )
        result = execute_specification(spec, activities=activities, time_scale=time_scale)

        assert not result.success
        assert "Time expired waiting for event: Approve" in result.error
        assert recorder.names() == ["first"]

    def test_each_gate_consumes_one_event(self, recorder, activities, time_scale):
        spec = _spec(
            _stage("S1", _job("one"), waitForEvent=_gate(timeout_hours=1)),
            _stage("S2", _job("two"), waitForEvent=_gate(timeout_hours=0)),
        )
        result = execute_specification(
            spec, activities=activities, events=[("Approve", "Continue")], time_scale=time_scale,
        )

        assert not result.success
        assert recorder.names() == ["one"]


class TestStageTimeout:
    """Stage timers abort the wait, not the in-flight work."""

    def _slow_spec(self, continue_on_error: bool) -> OrchestrationSpecification:
        return _spec(
            _stage(
                "S1",
                _job("slow", "Delay", parameters={"DelayMilliseconds": "500"}),
                timeoutMinutes=0, continueOnError=continue_on_error,
            ),
            _stage("S2", _job("after")),
        )

    def test_timeout_is_fatal(self, recorder, activities, time_scale):
        result = execute_specification(self._slow_spec(False), activities=activities, time_scale=time_scale)

        assert not result.success
        assert result.custom_status == "failed"
        assert "TIMEOUT for stage: S1" in result.error
        assert recorder.count("after") == 0

    def test_timeout_contained(self, recorder, activities, time_scale):
        result = execute_specification(self._slow_spec(True), activities=activities, time_scale=time_scale)

        assert result.success
        assert result.custom_status == "complete"
        assert "after" in recorder.completed
        assert "slow" not in recorder.completed
