"""Tests for stageflow.stage_runner.run_stage."""

import asyncio

import pytest

from stageflow.errors import JobFailure, StageTimeout
from stageflow.schemas import FailureKind, Job, Stage
from stageflow.stage_runner import FAILED_STATUS, run_stage


def _stage(continue_on_error=False) -> Stage:
    return Stage(
        name="Build",
        state="building",
        continue_on_error=continue_on_error,
        timeout_minutes=5,
        jobs=(Job(name="a", function="Record"), Job(name="b", function="Record")),
    )


async def _run(context, stage, meta=None):
    try:
        return await run_stage(context, stage, meta)
    finally:
        await context.settle()


class TestRunStage:
    """Tests for the stage body."""

    def test_success(self, fake_context):
        context = fake_context()
        outcome = asyncio.run(_run(context, _stage(), {"k": "v"}))

        assert outcome.ok
        assert outcome.value == ["Record:a", "Record:b"]
        assert context.statuses == ["building"]
        assert context.timers[0].cancelled
        for _, job_context, _ in context.activity_calls:
            assert job_context.correlation_id == "run-1"
            assert dict(job_context.meta) == {"k": "v"}

    def test_contained_failure(self, fake_context):
        context = fake_context()
        context.failures["a"] = JobFailure("a", 1)
        outcome = asyncio.run(_run(context, _stage(continue_on_error=True)))

        assert not outcome.ok
        assert outcome.kind == FailureKind.JOB_FAILURE
        assert FAILED_STATUS not in context.statuses
        assert context.timers[0].cancelled

    def test_fatal_failure(self, fake_context):
        context = fake_context()
        context.failures["b"] = JobFailure("b", 2)

        with pytest.raises(JobFailure, match="'b'"):
            asyncio.run(_run(context, _stage()))
        assert context.statuses == ["building", FAILED_STATUS]
        assert context.timers[0].cancelled

    def test_timeout_fatal(self, fake_context):
        context = fake_context(timers_fire=True)
        context.hanging.add("a")

        with pytest.raises(StageTimeout, match="TIMEOUT for stage: Build"):
            asyncio.run(_run(context, _stage()))
        assert context.statuses[-1] == FAILED_STATUS

    def test_timeout_contained(self, fake_context):
        context = fake_context(timers_fire=True)
        context.hanging.add("a")
        outcome = asyncio.run(_run(context, _stage(continue_on_error=True)))

        assert outcome.kind == FailureKind.STAGE_TIMEOUT
        assert isinstance(outcome.cause, StageTimeout)
