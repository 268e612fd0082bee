"""End-to-end tests through the orchestration system facade."""

import asyncio

import pytest

from agent_orchestration.core.config import load_config
from agent_orchestration.core.errors import (
    InteractionAlreadyResolvedError,
    SystemNotInitializedError,
)
from agent_orchestration.core.models import Domain, EventType, WorkflowStatus
from agent_orchestration.core.system import OrchestrationSystem

from .helpers import EchoAgent, EventRecorder, FakeCompletionService, RecordingSleep

PLAN = {
    "name": "Summarize",
    "steps": [{"agentId": "echo", "taskType": "summarize", "input": {"text": "${context.doc}"}}],
}


def build_system(plan=PLAN):
    return OrchestrationSystem(
        config={"approval_timeout_seconds": 1.0},
        completion_service=FakeCompletionService(plan),
        sleep=RecordingSleep(),
    )


@pytest.mark.asyncio
async def test_process_request_requires_initialize():
    system = build_system()
    with pytest.raises(SystemNotInitializedError):
        await system.process_user_request("summarize")


@pytest.mark.asyncio
async def test_initialize_registers_agents_and_seeds_knowledge():
    system = build_system()
    await system.initialize([EchoAgent(name="Report Writer")])
    await system.initialize()

    assert [a.id for a in system.get_available_agents()] == ["echo"]
    assert system.get_agents_by_domain(Domain.CONTENT)[0].id == "echo"
    assert system.search_knowledge("Report Writer")[0]["metadata"]["agent_id"] == "echo"
    assert system.knowledge_store.get_document_count() == 2
    assert system.get_system_status()["initialized"] is True


@pytest.mark.asyncio
async def test_process_request_runs_workflow_in_background():
    system = build_system()
    agent = EchoAgent()
    await system.initialize([agent])
    recorder = EventRecorder()
    system.subscribe(recorder, [EventType.WORKFLOW_COMPLETED])

    response = await system.process_user_request("summarize", {"doc": "text"})
    workflow_id = response["workflow_id"]
    await asyncio.gather(*system.background_tasks)

    assert await system.get_workflow_status(workflow_id) == WorkflowStatus.COMPLETED
    assert agent.calls[0].input == {"text": "text"}
    assert recorder.types() == ["workflow_completed"]
    assert [e.type for e in system.get_workflow_events(workflow_id)][0] == EventType.WORKFLOW_STARTED


@pytest.mark.asyncio
async def test_metrics_follow_lifecycle_events():
    system = build_system()
    await system.initialize([EchoAgent()])

    workflow = await system.plan_workflow("summarize", {"doc": "text"})
    await system.execute_workflow(workflow.id)

    metrics = system.get_system_metrics()
    assert metrics["total_workflows"] == 1
    assert metrics["completed_workflows"] == 1
    assert metrics["failed_workflows"] == 0
    assert metrics["active_workflows"] == 0
    agent_stats = metrics["agent_metrics"][0]
    assert agent_stats["agent_id"] == "echo"
    assert agent_stats["total_executions"] == 1
    assert agent_stats["successful_executions"] == 1
    assert agent_stats["average_confidence"] == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_human_approval_through_facade():
    plan = {"steps": [{"agentId": "echo", "taskType": "summarize",
                       "humanApprovalRequired": True}]}
    system = build_system(plan)
    await system.initialize([EchoAgent()])
    workflow = await system.plan_workflow("needs sign-off")

    run = asyncio.create_task(system.execute_workflow(workflow.id))
    pending = []
    for _ in range(50):
        pending = system.get_pending_interactions(workflow.id)
        if pending:
            break
        await asyncio.sleep(0.01)

    system.respond_to_human_interaction(pending[0].id, {"approved": True})
    await run
    assert system.get_workflow(workflow.id).status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_shutdown_cancels_background_runs():
    plan = {"steps": [{"agentId": "echo", "taskType": "summarize",
                       "humanApprovalRequired": True}]}
    system = build_system(plan)
    await system.initialize([EchoAgent()])
    response = await system.process_user_request("needs sign-off")
    await asyncio.sleep(0.01)

    await system.shutdown()

    assert system.get_workflow(response["workflow_id"]).status == WorkflowStatus.CANCELLED


@pytest.mark.asyncio
async def test_shutdown_settles_gated_step_and_its_approval():
    plan = {"steps": [{"agentId": "echo", "taskType": "summarize",
                       "humanApprovalRequired": True}]}
    system = build_system(plan)
    agent = EchoAgent()
    await system.initialize([agent])
    response = await system.process_user_request("needs sign-off")
    workflow_id = response["workflow_id"]
    for _ in range(50):
        if system.get_pending_interactions(workflow_id):
            break
        await asyncio.sleep(0.01)
    interaction = system.get_pending_interactions(workflow_id)[0]

    await system.shutdown()

    assert [e.type.value for e in system.get_workflow_events(workflow_id)] == [
        "workflow_started", "step_started", "human_input_required",
        "step_failed", "workflow_cancelled",
    ]
    assert system.get_pending_interactions(workflow_id) == []
    with pytest.raises(InteractionAlreadyResolvedError):
        system.respond_to_human_interaction(interaction.id, {"approved": True})
    assert agent.calls == []


@pytest.mark.asyncio
async def test_non_numeric_confidence_left_out_of_metrics():
    class VagueAgent(EchoAgent):
        async def execute(self, task):
            result = await super().execute(task)
            result.confidence = "high"
            return result

    system = build_system()
    await system.initialize([VagueAgent()])
    workflow = await system.plan_workflow("summarize", {"doc": "text"})
    await system.execute_workflow(workflow.id)

    agent_stats = system.get_system_metrics()["agent_metrics"][0]
    assert agent_stats["successful_executions"] == 1
    assert agent_stats["average_confidence"] == 0.0


def test_load_config_layers(monkeypatch):
    monkeypatch.setenv("ORCHESTRATION_APPROVAL_TIMEOUT", "12.5")
    monkeypatch.setenv("ORCHESTRATION_MODEL", "gpt-test")

    config = load_config({"model": "override"})

    assert config["approval_timeout_seconds"] == 12.5
    assert config["model"] == "override"
    assert config["kafka_topic"] == "workflow_events"


def test_load_config_rejects_bad_numbers(monkeypatch):
    monkeypatch.setenv("ORCHESTRATION_APPROVAL_TIMEOUT", "soon")
    with pytest.raises(ValueError):
        load_config()
