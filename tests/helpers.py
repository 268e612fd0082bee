"""Shared fakes and builders for orchestration tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

from agent_orchestration.agents.base import SpecializedAgent
from agent_orchestration.core.models import (
    Capability,
    Domain,
    ExecutionResult,
    RetryPolicy,
    Task,
    Workflow,
    WorkflowEvent,
    WorkflowStep,
)
from agent_orchestration.llm.completion_service import CompletionService


def make_capability(name: str = "summarize", domain: Domain = Domain.CONTENT,
                    properties: Optional[Dict[str, Any]] = None,
                    required: Optional[List[str]] = None) -> Capability:
    input_schema: Dict[str, Any] = {"type": "object"}
    if properties is not None:
        input_schema["properties"] = properties
    if required:
        input_schema["required"] = required
    return Capability(
        id=f"cap-{name}",
        name=name,
        description=f"{name} capability",
        domain=domain,
        input_schema=input_schema,
    )


class EchoAgent(SpecializedAgent):
    """Succeeds with its input echoed back as output."""

    def __init__(self, agent_id: str = "echo", capabilities=None,
                 domain: Domain = Domain.CONTENT, delay: float = 0.0,
                 output: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(
            name=kwargs.pop("name", f"Echo {agent_id}"),
            description="Echoes its input",
            domain=domain,
            capabilities=capabilities or [make_capability()],
            agent_id=agent_id,
            **kwargs,
        )
        self.delay = delay
        self.output = output
        self.calls: List[Task] = []

    async def execute(self, task: Task) -> ExecutionResult:
        self.calls.append(task)
        if self.delay:
            await asyncio.sleep(self.delay)
        output = dict(self.output) if self.output is not None else dict(task.input)
        return ExecutionResult(success=True, output=output, confidence=0.9)


class FailingAgent(SpecializedAgent):
    """Fails the first `failures` calls (forever when None)."""

    def __init__(self, agent_id: str = "flaky", failures: Optional[int] = None,
                 raise_error: bool = True):
        super().__init__(
            name=f"Failing {agent_id}",
            description="Fails on purpose",
            domain=Domain.CONTENT,
            capabilities=[make_capability()],
            agent_id=agent_id,
        )
        self.failures = failures
        self.raise_error = raise_error
        self.calls = 0

    async def execute(self, task: Task) -> ExecutionResult:
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            if self.raise_error:
                raise RuntimeError(f"boom {self.calls}")
            return ExecutionResult(success=False, error=f"refused {self.calls}")
        return ExecutionResult(success=True, output={"attempts": self.calls})


class FakeCompletionService(CompletionService):
    """Returns canned responses and records prompts."""

    def __init__(self, response: Any = None):
        if response is not None and not isinstance(response, str):
            response = json.dumps(response)
        self.response = response
        self.prompts: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt: str, temperature: float = 0.7,
                       max_tokens: int = 1000,
                       response_format: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        self.calls.append({
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": response_format,
        })
        return self.response


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class EventRecorder:
    def __init__(self):
        self.events: List[WorkflowEvent] = []

    def __call__(self, event: WorkflowEvent):
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


def make_step(step_id: str, agent_id: str = "echo", task_type: str = "summarize",
              parallel: bool = False, **kwargs) -> WorkflowStep:
    return WorkflowStep(
        id=step_id,
        agent_id=agent_id,
        task_type=task_type,
        parallel=parallel,
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(max_retries=0)),
        **kwargs,
    )


def make_workflow(steps: List[WorkflowStep], workflow_id: str = "wf-1",
                  context: Optional[Dict[str, Any]] = None) -> Workflow:
    return Workflow(
        id=workflow_id,
        name="Test workflow",
        description="Workflow used in tests",
        steps=steps,
        context=context or {},
    )
