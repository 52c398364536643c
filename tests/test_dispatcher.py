"""Tests for stageflow.dispatcher."""

import asyncio

from stageflow.dispatcher import (
    SUB_WORKFLOW_NAME,
    SubWorkflowInput,
    build_retry_policy,
    child_instance_id,
    dispatch,
)
from stageflow.schemas import Job, RetryPolicy


LEAF = Job(name="A", function="Delay", parameters={"DelayMilliseconds": "0"},
           max_retry_count=3, retry_timeout_seconds=5)
COMPOSITE = Job(name="Parent", function="Skip", jobs=(Job(name="B", function="EchoJobName"),),
                max_retry_count=2)
META = {"team": "infra"}


class TestDispatch:
    """Tests for dispatch()."""

    def test_leaf_invokes_activity(self, fake_context):
        async def scenario():
            context = fake_context()
            result = await dispatch(context, LEAF, META, "run-1")
            return context, result

        context, result = asyncio.run(scenario())

        assert result == "Delay:A"
        assert context.subworkflow_calls == []
        name, job_context, policy = context.activity_calls[0]
        assert name == "Delay"
        assert job_context.job is LEAF
        assert job_context.correlation_id == "run-1"
        assert dict(job_context.meta) == META
        assert policy == RetryPolicy(max_attempts=3, first_retry_interval_seconds=5)

    def test_composite_starts_sub_workflow(self, fake_context):
        async def scenario():
            context = fake_context()
            await dispatch(context, COMPOSITE, META, "run-1")
            return context

        context = asyncio.run(scenario())

        assert context.activity_calls == []
        name, instance_id, sub_input, policy = context.subworkflow_calls[0]
        assert name == SUB_WORKFLOW_NAME
        assert instance_id == "run-1-s1"
        assert sub_input == SubWorkflowInput(job=COMPOSITE, meta=META)
        assert policy.max_attempts == 2

    def test_child_ids_are_unique(self, fake_context):
        context = fake_context()
        ids = {child_instance_id(context, "run-1") for _ in range(5)}
        assert len(ids) == 5
        assert all(i.startswith("run-1-") for i in ids)


class TestBuildRetryPolicy:
    """Tests for build_retry_policy()."""

    def test_defaults(self):
        policy = build_retry_policy(Job(name="A", function="Skip"))
        assert policy.max_attempts == 1
        assert policy.first_retry_interval_seconds == 10
        assert policy.backoff_coefficient == 1.0

    def test_backoff(self):
        job = Job(name="A", function="Skip", max_retry_count=3, retry_timeout_seconds=5,
                  backoff_coefficient=1.5, max_retry_interval_seconds=60)
        policy = build_retry_policy(job)
        assert policy.max_attempts == 3
        assert policy.first_retry_interval_seconds == 5
        assert policy.backoff_coefficient == 1.5
        assert policy.max_retry_interval_seconds == 60
