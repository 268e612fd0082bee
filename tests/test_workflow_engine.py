"""Tests for the workflow engine scheduler and state machine."""

import asyncio

import pytest

from agent_orchestration.core.errors import (
    AlreadyRunningError,
    ApprovalCancelledError,
    ApprovalTimeoutError,
    ConditionsNotMetError,
    InvalidInputError,
    InvalidWorkflowStateError,
    StepExecutionFailedError,
    WorkflowExecutionFailedError,
    WorkflowNotFoundError,
)
from agent_orchestration.core.models import (
    BackoffStrategy,
    Condition,
    ConditionOperator,
    EventType,
    ExecutionResult,
    RetryPolicy,
    TaskStatus,
    WorkflowStatus,
)
from agent_orchestration.core.registry import CapabilityRegistry
from agent_orchestration.core.workflow_engine import WorkflowEngine
from agent_orchestration.integration.event_bus import EventBus
from agent_orchestration.integration.human_interaction_manager import HumanInteractionManager

from .helpers import (
    EchoAgent,
    EventRecorder,
    FailingAgent,
    RecordingSleep,
    make_capability,
    make_step,
    make_workflow,
)


def build_engine(*agents, approval_timeout=5.0):
    registry = CapabilityRegistry()
    for agent in agents:
        registry.register(agent)
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    sleep = RecordingSleep()
    engine = WorkflowEngine(
        registry,
        event_bus=bus,
        interaction_manager=HumanInteractionManager(approval_timeout),
        approval_timeout=approval_timeout,
        sleep=sleep,
    )
    return engine, recorder, sleep


class TestGrouping:

    def test_adjacent_parallel_steps_join_previous_group(self):
        steps = [
            make_step("s1", parallel=False),
            make_step("s2", parallel=True),
            make_step("s3", parallel=False),
            make_step("s4", parallel=True),
        ]
        groups = WorkflowEngine.group_steps(steps)
        assert [[s.id for s in g] for g in groups] == [["s1", "s2"], ["s3", "s4"]]

    def test_first_step_never_merges_backward(self):
        steps = [make_step("s1", parallel=True), make_step("s2", parallel=True)]
        groups = WorkflowEngine.group_steps(steps)
        assert [[s.id for s in g] for g in groups] == [["s1", "s2"]]

    def test_sequential_steps_form_singleton_groups(self):
        steps = [make_step("a"), make_step("b"), make_step("c")]
        assert len(WorkflowEngine.group_steps(steps)) == 3

    def test_no_steps_no_groups(self):
        assert WorkflowEngine.group_steps([]) == []


class TestExecution:

    @pytest.mark.asyncio
    async def test_zero_step_workflow_completes_immediately(self):
        engine, recorder, _ = build_engine()
        workflow = make_workflow([])

        await engine.execute_workflow(workflow)

        assert workflow.status == WorkflowStatus.COMPLETED
        assert recorder.types() == ["workflow_started", "workflow_completed"]
        assert not engine.is_running(workflow.id)

    @pytest.mark.asyncio
    async def test_events_emitted_in_causal_order(self):
        agent = EchoAgent()
        engine, recorder, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1"), make_step("s2")])

        await engine.execute_workflow(workflow)

        assert recorder.types() == [
            "workflow_started",
            "step_started", "step_completed",
            "step_started", "step_completed",
            "workflow_completed",
        ]
        completed = recorder.events[2]
        assert completed.step_id == "s1"
        assert completed.data["success"] is True
        assert completed.metadata["agent_id"] == "echo"

    @pytest.mark.asyncio
    async def test_parallel_group_runs_concurrently(self):
        started = []
        release = asyncio.Event()

        class BlockingAgent(EchoAgent):
            async def execute(self, task):
                started.append(task.input["n"])
                await release.wait()
                return await super().execute(task)

        agent = BlockingAgent()
        engine, _, _ = build_engine(agent)
        workflow = make_workflow([
            make_step("s1", input={"n": 1}),
            make_step("s2", parallel=True, input={"n": 2}),
        ])

        run = asyncio.create_task(engine.execute_workflow(workflow))
        for _ in range(20):
            if len(started) == 2:
                break
            await asyncio.sleep(0)
        assert sorted(started) == [1, 2]

        release.set()
        await run
        assert workflow.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_in_group_stops_later_groups(self):
        good = EchoAgent("good")
        bad = FailingAgent("bad")
        later = EchoAgent("later")
        engine, recorder, _ = build_engine(good, bad, later)
        workflow = make_workflow([
            make_step("s1", agent_id="good"),
            make_step("s2", agent_id="bad", parallel=True),
            make_step("s3", agent_id="later"),
        ])

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(workflow)

        assert exc_info.value.step_id == "s2"
        assert isinstance(exc_info.value.cause, StepExecutionFailedError)
        assert workflow.status == WorkflowStatus.FAILED
        assert later.calls == []
        assert recorder.types()[-1] == "workflow_failed"
        assert "s2" in recorder.events[-1].data["error"]
        assert not engine.is_running(workflow.id)

    @pytest.mark.asyncio
    async def test_missing_agent_fails_step(self):
        engine, recorder, _ = build_engine()
        workflow = make_workflow([make_step("s1", agent_id="ghost")])

        with pytest.raises(WorkflowExecutionFailedError):
            await engine.execute_workflow(workflow)

        assert "step_failed" in recorder.types()
        assert workflow.status == WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_terminal_workflow_cannot_be_rerun(self):
        engine, _, _ = build_engine()
        workflow = make_workflow([])
        await engine.execute_workflow(workflow)

        with pytest.raises(InvalidWorkflowStateError):
            await engine.execute_workflow(workflow)


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_second_execute_rejected_while_running(self):
        agent = EchoAgent(delay=0.05)
        engine, _, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1")])

        results = await asyncio.gather(
            engine.execute_workflow(workflow),
            engine.execute_workflow(workflow),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyRunningError)
        assert len(agent.calls) == 1
        assert workflow.status == WorkflowStatus.COMPLETED


class TestRetry:

    @pytest.mark.asyncio
    async def test_exponential_backoff_until_exhausted(self):
        agent = FailingAgent()
        engine, _, sleep = build_engine(agent)
        policy = RetryPolicy(max_retries=2, backoff_strategy=BackoffStrategy.EXPONENTIAL,
                             base_delay=100, max_delay=10000)
        workflow = make_workflow([make_step("s1", agent_id="flaky", retry_policy=policy)])

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(workflow)

        assert agent.calls == 3
        assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]
        assert exc_info.value.cause.attempts == 3
        assert workflow.status == WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_linear_backoff_capped_at_max_delay(self):
        agent = FailingAgent()
        engine, _, sleep = build_engine(agent)
        policy = RetryPolicy(max_retries=3, backoff_strategy=BackoffStrategy.LINEAR,
                             base_delay=100, max_delay=250)
        workflow = make_workflow([make_step("s1", agent_id="flaky", retry_policy=policy)])

        with pytest.raises(WorkflowExecutionFailedError):
            await engine.execute_workflow(workflow)

        assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2), pytest.approx(0.25)]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        agent = FailingAgent(failures=1)
        engine, recorder, sleep = build_engine(agent)
        policy = RetryPolicy(max_retries=2, base_delay=10)
        workflow = make_workflow([make_step("s1", agent_id="flaky", retry_policy=policy)])

        await engine.execute_workflow(workflow)

        assert agent.calls == 2
        assert sleep.delays == [pytest.approx(0.01)]
        assert workflow.status == WorkflowStatus.COMPLETED
        assert recorder.events[-2].data["output"] == {"attempts": 2}

    @pytest.mark.asyncio
    async def test_unsuccessful_result_counts_as_failed_attempt(self):
        agent = FailingAgent(raise_error=False)
        engine, _, _ = build_engine(agent)
        policy = RetryPolicy(max_retries=1, base_delay=10)
        workflow = make_workflow([make_step("s1", agent_id="flaky", retry_policy=policy)])

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(workflow)

        assert agent.calls == 2
        assert "refused 2" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_task_status_and_retry_count_tracked(self):
        seen = []

        class InspectingAgent(FailingAgent):
            async def execute(self, task):
                seen.append((task.status, task.retry_count, task.max_retries))
                return await super().execute(task)

        agent = InspectingAgent(failures=1)
        engine, _, _ = build_engine(agent)
        policy = RetryPolicy(max_retries=2, base_delay=1)
        await engine.execute_workflow(
            make_workflow([make_step("s1", agent_id="flaky", retry_policy=policy)])
        )

        assert seen == [(TaskStatus.RUNNING, 0, 2), (TaskStatus.RUNNING, 1, 2)]

    @pytest.mark.asyncio
    async def test_missing_policy_uses_defaults(self):
        agent = FailingAgent()
        engine, _, sleep = build_engine(agent)
        step = make_step("s1", agent_id="flaky", retry_policy=None)

        with pytest.raises(WorkflowExecutionFailedError):
            await engine.execute_workflow(make_workflow([step]))

        assert agent.calls == 4
        assert sleep.delays == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


class TestInputResolution:

    def test_context_and_step_references(self):
        results = {"s1": ExecutionResult(success=True, output={"summary": "short"})}
        resolved = WorkflowEngine.resolve_step_input(
            {
                "topic": "${context.topic}",
                "text": "${step.s1.summary}",
                "literal": "plain ${context.topic} text",
                "count": 3,
            },
            results,
            {"topic": "foxes"},
        )
        assert resolved == {
            "topic": "foxes",
            "text": "short",
            "literal": "plain ${context.topic} text",
            "count": 3,
        }

    def test_unresolved_references_are_dropped(self):
        resolved = WorkflowEngine.resolve_step_input(
            {"a": "${context.nope}", "b": "${step.s9.key}", "c": "kept"},
            {},
            {},
        )
        assert resolved == {"c": "kept"}

    @pytest.mark.asyncio
    async def test_prior_step_output_flows_into_next_step(self):
        first = EchoAgent("first", output={"summary": "tiny"})
        second = EchoAgent("second")
        engine, _, _ = build_engine(first, second)
        workflow = make_workflow(
            [
                make_step("s1", agent_id="first", input={"text": "${context.doc}"}),
                make_step("s2", agent_id="second", input={"previous": "${step.s1.summary}"}),
            ],
            context={"doc": "long text"},
        )

        await engine.execute_workflow(workflow)

        assert first.calls[0].input == {"text": "long text"}
        assert second.calls[0].input == {"previous": "tiny"}
        assert second.calls[0].parent_workflow_id == workflow.id


class TestPayloadValidation:

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected_before_dispatch(self):
        capability = make_capability("summarize", properties={"text": {"type": "string"}},
                                     required=["text"])
        agent = EchoAgent(capabilities=[capability])
        engine, recorder, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1", input={"text": "x", "extra": 1})])

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(workflow)

        assert isinstance(exc_info.value.cause, InvalidInputError)
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_agent_validate_hook_can_reject(self):
        class PickyAgent(EchoAgent):
            def validate(self, input_data):
                return "text" in input_data

        agent = PickyAgent()
        engine, _, _ = build_engine(agent)

        with pytest.raises(WorkflowExecutionFailedError):
            await engine.execute_workflow(make_workflow([make_step("s1", input={"n": 1})]))
        assert agent.calls == []


class TestConditions:

    def _result(self, **output):
        return ExecutionResult(success=True, output=output)

    def test_no_conditions_vacuously_true(self):
        assert WorkflowEngine.evaluate_conditions([], self._result())

    def test_operators(self):
        result = self._result(flag=True, score=7, label="approved draft")

        def check(field, operator, value):
            return WorkflowEngine.evaluate_conditions(
                [Condition(field, ConditionOperator(operator), value)], result
            )

        assert check("output.flag", "equals", True)
        assert not check("output.flag", "equals", 1)
        assert check("output.score", "equals", 7.0)
        assert check("output.score", "not_equals", "7")
        assert check("output.label", "contains", "approved")
        assert check("success", "contains", "true")
        assert check("output.score", "greater_than", "5")
        assert not check("output.score", "less_than", 5)
        assert not check("output.label", "greater_than", 1)
        assert not check("output.missing", "equals", None)
        assert check("output.missing", "not_equals", None)

    def test_all_conditions_must_hold(self):
        result = self._result(a=1, b=2)
        conditions = [
            Condition("output.a", ConditionOperator.EQUALS, 1),
            Condition("output.b", ConditionOperator.EQUALS, 3, next_step_id="s9"),
        ]
        assert not WorkflowEngine.evaluate_conditions(conditions, result)

    @pytest.mark.asyncio
    async def test_unmet_conditions_fail_the_step(self):
        agent = EchoAgent(output={"ok": False})
        engine, recorder, _ = build_engine(agent)
        step = make_step("s1", conditions=[Condition("output.ok", ConditionOperator.EQUALS, True)])

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(make_workflow([step]))

        assert isinstance(exc_info.value.cause, ConditionsNotMetError)
        assert recorder.types()[-2] == "step_failed"


class TestHumanApproval:

    @pytest.mark.asyncio
    async def test_timeout_fails_without_dispatch(self):
        agent = EchoAgent()
        engine, recorder, _ = build_engine(agent, approval_timeout=0.05)
        step = make_step("s1", human_approval_required=True)

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(make_workflow([step]))

        assert isinstance(exc_info.value.cause, ApprovalTimeoutError)
        assert agent.calls == []
        assert "human_input_required" in recorder.types()
        assert engine.interactions.get_pending_interactions() == []

    @pytest.mark.asyncio
    async def test_response_releases_step(self):
        agent = EchoAgent()
        engine, recorder, _ = build_engine(agent)

        def approve(event):
            engine.respond_to_human_interaction(event.data["id"], {"approved": True})

        engine.event_bus.subscribe(approve, [EventType.HUMAN_INPUT_REQUIRED])
        workflow = make_workflow([make_step("s1", human_approval_required=True)])

        await engine.execute_workflow(workflow)

        assert workflow.status == WorkflowStatus.COMPLETED
        assert len(agent.calls) == 1
        assert recorder.types() == [
            "workflow_started", "step_started", "human_input_required",
            "step_completed", "workflow_completed",
        ]

    @pytest.mark.asyncio
    async def test_response_after_suspension(self):
        agent = EchoAgent()
        engine, _, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1", human_approval_required=True)])

        run = asyncio.create_task(engine.execute_workflow(workflow))
        pending = []
        for _ in range(50):
            pending = engine.interactions.get_pending_interactions(workflow.id)
            if pending:
                break
            await asyncio.sleep(0.01)

        assert agent.calls == []
        engine.respond_to_human_interaction(pending[0].id, "yes")
        await run
        assert len(agent.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_interaction_fails_step(self):
        agent = EchoAgent()
        engine, _, _ = build_engine(agent)

        engine.event_bus.subscribe(
            lambda event: engine.interactions.cancel(event.data["id"]),
            [EventType.HUMAN_INPUT_REQUIRED],
        )

        with pytest.raises(WorkflowExecutionFailedError) as exc_info:
            await engine.execute_workflow(
                make_workflow([make_step("s1", human_approval_required=True)])
            )
        assert isinstance(exc_info.value.cause, ApprovalCancelledError)
        assert agent.calls == []


class TestLifecycleControls:

    @pytest.mark.asyncio
    async def test_status_queries_are_stable(self):
        engine, _, _ = build_engine()
        workflow = make_workflow([])
        engine.track_workflow(workflow)

        assert engine.get_workflow_status(workflow.id) == engine.get_workflow_status(workflow.id)
        with pytest.raises(WorkflowNotFoundError):
            engine.get_workflow_status("nope")

    @pytest.mark.asyncio
    async def test_pause_only_from_running(self):
        engine, _, _ = build_engine()
        workflow = make_workflow([])
        engine.track_workflow(workflow)

        with pytest.raises(InvalidWorkflowStateError):
            engine.pause_workflow(workflow.id)
        with pytest.raises(InvalidWorkflowStateError):
            await engine.resume_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_pause_stops_before_next_group_and_resume_restarts(self):
        agent = EchoAgent(delay=0.02)
        engine, recorder, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1"), make_step("s2")])

        run = asyncio.create_task(engine.execute_workflow(workflow))
        await asyncio.sleep(0.005)
        engine.pause_workflow(workflow.id)
        await run

        assert workflow.status == WorkflowStatus.PAUSED
        assert len(agent.calls) == 1
        assert "workflow_completed" not in recorder.types()

        await engine.resume_workflow(workflow.id)

        assert workflow.status == WorkflowStatus.COMPLETED
        # restarts from the first step
        assert len(agent.calls) == 3
        assert "workflow_resumed" in recorder.types()

    @pytest.mark.asyncio
    async def test_cancel_discards_in_flight_work(self):
        agent = EchoAgent(delay=0.02)
        engine, recorder, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1"), make_step("s2")])

        run = asyncio.create_task(engine.execute_workflow(workflow))
        await asyncio.sleep(0.005)
        engine.cancel_workflow(workflow.id)
        assert not engine.is_running(workflow.id)
        await run

        assert workflow.status == WorkflowStatus.CANCELLED
        assert len(agent.calls) == 1
        assert "workflow_completed" not in recorder.types()
        assert "workflow_failed" not in recorder.types()
        with pytest.raises(InvalidWorkflowStateError):
            engine.cancel_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_cancel_releases_pending_approval(self):
        agent = EchoAgent()
        engine, recorder, _ = build_engine(agent)
        workflow = make_workflow([make_step("s1", human_approval_required=True)])

        run = asyncio.create_task(engine.execute_workflow(workflow))
        for _ in range(50):
            if engine.interactions.get_pending_interactions(workflow.id):
                break
            await asyncio.sleep(0.01)

        engine.cancel_workflow(workflow.id)
        await run

        assert workflow.status == WorkflowStatus.CANCELLED
        assert agent.calls == []
        assert "workflow_failed" not in recorder.types()
