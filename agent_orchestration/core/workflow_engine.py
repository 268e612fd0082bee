"""
Workflow engine: schedules plan steps onto agents and drives the workflow
state machine
"""
import asyncio
import logging
import math
import re
import json
import threading
import time
import uuid
from typing import Dict, List, Any, Optional, Callable, Awaitable

from agent_orchestration.agents.base import SpecializedAgent
from agent_orchestration.core.errors import (
    AgentNotFoundError,
    AlreadyRunningError,
    ConditionsNotMetError,
    InvalidInputError,
    InvalidWorkflowStateError,
    StepExecutionFailedError,
    WorkflowExecutionFailedError,
    WorkflowNotFoundError,
)
from agent_orchestration.core.models import (
    Condition,
    ConditionOperator,
    EventType,
    ExecutionResult,
    RetryPolicy,
    Task,
    TaskStatus,
    TERMINAL_STATUSES,
    WORKFLOW_TRANSITIONS,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    WorkflowStep,
)
from agent_orchestration.core.registry import CapabilityRegistry
from agent_orchestration.integration.event_bus import EventBus
from agent_orchestration.integration.human_interaction_manager import HumanInteractionManager
from agent_orchestration.schemas.validation import validate_payload

logger = logging.getLogger(__name__)

CONTEXT_REFERENCE = re.compile(r"^\$\{context\.([^}]+)\}$")
STEP_REFERENCE = re.compile(r"^\$\{step\.([^.}]+)\.([^}]+)\}$")

_MISSING = object()


class WorkflowEngine:
    """Runs workflows step group by step group against registered agents"""

    def __init__(self, registry: CapabilityRegistry,
                 event_bus: Optional[EventBus] = None,
                 interaction_manager: Optional[HumanInteractionManager] = None,
                 approval_timeout: float = 300.0,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.registry = registry
        self.event_bus = event_bus or EventBus()
        self.interactions = interaction_manager or HumanInteractionManager(approval_timeout)
        self.approval_timeout = approval_timeout
        self._sleep = sleep or asyncio.sleep
        self.workflows: Dict[str, Workflow] = {}
        # workflow id -> token of the run that owns it
        self.running_workflows: Dict[str, str] = {}
        self.lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def track_workflow(self, workflow: Workflow):
        with self.lock:
            self.workflows[workflow.id] = workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        with self.lock:
            workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def get_workflow_status(self, workflow_id: str) -> WorkflowStatus:
        return self.get_workflow(workflow_id).status

    def is_running(self, workflow_id: str) -> bool:
        with self.lock:
            return workflow_id in self.running_workflows

    def _transition(self, workflow: Workflow, status: WorkflowStatus):
        if status not in WORKFLOW_TRANSITIONS[workflow.status]:
            raise InvalidWorkflowStateError(
                f"Workflow {workflow.id} cannot go from "
                f"{workflow.status.value} to {status.value}"
            )
        workflow.status = status
        workflow.touch()

    async def execute_workflow(self, workflow: Workflow):
        """Run a workflow to completion, failure, pause or cancellation"""
        run_token = str(uuid.uuid4())
        with self.lock:
            if workflow.id in self.running_workflows:
                raise AlreadyRunningError(workflow.id)
            self._transition(workflow, WorkflowStatus.RUNNING)
            self.workflows[workflow.id] = workflow
            self.running_workflows[workflow.id] = run_token

        started = time.monotonic()
        logger.info(f"Executing workflow {workflow.id} with {len(workflow.steps)} step(s)")
        self._emit(EventType.WORKFLOW_STARTED, workflow.id)

        try:
            finished = await self._execute_workflow_steps(workflow)
        except asyncio.CancelledError:
            with self.lock:
                cancelled = workflow.status not in TERMINAL_STATUSES
                if cancelled:
                    self._transition(workflow, WorkflowStatus.CANCELLED)
            self.interactions.cancel_for_workflow(workflow.id)
            if cancelled:
                self._emit(EventType.WORKFLOW_CANCELLED, workflow.id)
            raise
        except Exception as e:
            with self.lock:
                if workflow.status == WorkflowStatus.CANCELLED:
                    logger.info(f"Discarding failure of cancelled workflow {workflow.id}: {e}")
                    return
                self._transition(workflow, WorkflowStatus.FAILED)

            logger.error(f"Workflow {workflow.id} failed: {e}")
            self._emit(EventType.WORKFLOW_FAILED, workflow.id, data={"error": str(e)},
                       metadata={"duration": time.monotonic() - started})
            raise
        finally:
            with self.lock:
                if self.running_workflows.get(workflow.id) == run_token:
                    del self.running_workflows[workflow.id]

        with self.lock:
            if workflow.status == WorkflowStatus.CANCELLED:
                logger.info(f"Workflow {workflow.id} was cancelled, results discarded")
                return
            if not finished:
                logger.info(f"Workflow {workflow.id} stopped at status {workflow.status.value}")
                return
            self._transition(workflow, WorkflowStatus.COMPLETED)

        logger.info(f"Workflow {workflow.id} completed")
        self._emit(EventType.WORKFLOW_COMPLETED, workflow.id,
                   metadata={"duration": time.monotonic() - started})

    def pause_workflow(self, workflow_id: str):
        workflow = self.get_workflow(workflow_id)
        with self.lock:
            self._transition(workflow, WorkflowStatus.PAUSED)
        logger.info(f"Workflow {workflow_id} paused")
        self._emit(EventType.WORKFLOW_PAUSED, workflow_id)

    async def resume_workflow(self, workflow_id: str):
        """Re-run a paused workflow from its first step"""
        workflow = self.get_workflow(workflow_id)
        with self.lock:
            if workflow.status != WorkflowStatus.PAUSED:
                raise InvalidWorkflowStateError(f"Workflow {workflow_id} is not paused")
            if workflow_id in self.running_workflows:
                raise AlreadyRunningError(workflow_id)

        logger.info(f"Workflow {workflow_id} resumed")
        self._emit(EventType.WORKFLOW_RESUMED, workflow_id)
        await self.execute_workflow(workflow)

    def cancel_workflow(self, workflow_id: str):
        """Mark cancelled; in-flight agent calls finish and are discarded"""
        workflow = self.get_workflow(workflow_id)
        with self.lock:
            self._transition(workflow, WorkflowStatus.CANCELLED)
            self.running_workflows.pop(workflow_id, None)

        self.interactions.cancel_for_workflow(workflow_id)
        logger.info(f"Workflow {workflow_id} cancelled")
        self._emit(EventType.WORKFLOW_CANCELLED, workflow_id)

    def respond_to_human_interaction(self, interaction_id: str, response: Any):
        self.interactions.respond(interaction_id, response)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @staticmethod
    def group_steps(steps: List[WorkflowStep]) -> List[List[WorkflowStep]]:
        """Split steps into runs of adjacent steps executed together.

        A step joins the current group only when it is marked parallel and
        the group already has a step.
        """
        groups: List[List[WorkflowStep]] = []
        current: List[WorkflowStep] = []

        for step in steps:
            if step.parallel and current:
                current.append(step)
            else:
                if current:
                    groups.append(current)
                current = [step]

        if current:
            groups.append(current)
        return groups

    async def _execute_workflow_steps(self, workflow: Workflow) -> bool:
        """Run every group; False if the run stopped before the last one"""
        step_results: Dict[str, ExecutionResult] = {}

        for group in self.group_steps(workflow.steps):
            if workflow.status != WorkflowStatus.RUNNING:
                return False

            outcomes = await asyncio.gather(
                *(self._execute_step(workflow, step, step_results) for step in group),
                return_exceptions=True
            )

            for step, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    raise WorkflowExecutionFailedError(workflow.id, step.id, outcome)

            for step, outcome in zip(group, outcomes):
                step_results[step.id] = outcome

        return True

    async def _execute_step(self, workflow: Workflow, step: WorkflowStep,
                            step_results: Dict[str, ExecutionResult]) -> ExecutionResult:
        started = time.monotonic()
        workflow.current_step_id = step.id
        workflow.touch()
        metadata = {"agent_id": step.agent_id, "task_type": step.task_type}

        self._emit(EventType.STEP_STARTED, workflow.id, step.id, metadata=dict(metadata))

        try:
            if step.human_approval_required:
                await self._request_human_approval(workflow.id, step)

            agent = self.registry.get(step.agent_id)
            if agent is None:
                raise AgentNotFoundError(step.agent_id)
            if not agent.is_active:
                raise AgentNotFoundError(step.agent_id, f"Agent {step.agent_id} is not active")

            task_input = self.resolve_step_input(step.input, step_results, workflow.context)
            self._validate_input(agent, step, task_input)

            policy = step.retry_policy or RetryPolicy()
            task = Task(
                id=str(uuid.uuid4()),
                type=step.task_type,
                input=task_input,
                context=workflow.context,
                priority=1,
                retry_count=0,
                max_retries=policy.max_retries,
                status=TaskStatus.PENDING,
                parent_workflow_id=workflow.id
            )

            result = await self._execute_task_with_retry(agent, task, step, policy)

            if not self.evaluate_conditions(step.conditions, result):
                raise ConditionsNotMetError(step.id)
        except asyncio.CancelledError:
            logger.warning(f"Step {step.id} of workflow {workflow.id} cancelled")
            metadata["duration"] = time.monotonic() - started
            self._emit(EventType.STEP_FAILED, workflow.id, step.id,
                       data={"error": "cancelled"}, metadata=metadata)
            raise
        except Exception as e:
            logger.error(f"Step {step.id} of workflow {workflow.id} failed: {e}")
            metadata["duration"] = time.monotonic() - started
            self._emit(EventType.STEP_FAILED, workflow.id, step.id,
                       data={"error": str(e)}, metadata=metadata)
            raise

        metadata["duration"] = time.monotonic() - started
        self._emit(EventType.STEP_COMPLETED, workflow.id, step.id,
                   data=result.to_dict(), metadata=metadata)
        return result

    def _validate_input(self, agent: SpecializedAgent, step: WorkflowStep,
                        task_input: Dict[str, Any]):
        capability = self.registry.find_capability(agent.id, step.task_type)
        if capability is None:
            raise InvalidInputError(
                f"Agent {agent.id} does not have capability {step.task_type}"
            )

        validate_payload(capability, task_input)

        if not agent.validate(task_input):
            raise InvalidInputError(
                f"Agent {agent.id} rejected input for {step.task_type}"
            )

    async def _execute_task_with_retry(self, agent: SpecializedAgent, task: Task,
                                       step: WorkflowStep,
                                       policy: RetryPolicy) -> ExecutionResult:
        last_error: Optional[Exception] = None

        for attempt in range(policy.max_retries + 1):
            task.retry_count = attempt
            task.set_status(TaskStatus.RUNNING)

            try:
                result = await agent.execute(task)
            except Exception as e:
                last_error = e
                error_text = str(e)
            else:
                if result.success:
                    task.set_status(TaskStatus.COMPLETED)
                    return result
                last_error = None
                error_text = result.error or "agent reported failure"

            task.set_status(TaskStatus.FAILED)

            if attempt == policy.max_retries:
                raise StepExecutionFailedError(step.id, attempt + 1, last_error, error_text)

            delay = policy.delay_for(attempt)
            logger.warning(
                f"Step {step.id} attempt {attempt + 1} failed ({error_text}), "
                f"retrying in {delay}ms"
            )
            await self._sleep(delay / 1000)

        # range() always yields at least one attempt
        raise StepExecutionFailedError(step.id, policy.max_retries + 1, last_error)

    async def _request_human_approval(self, workflow_id: str, step: WorkflowStep):
        interaction = self.interactions.create_interaction(
            workflow_id,
            step.id,
            prompt=f"Approval required for step: {step.task_type}"
        )

        self._emit(EventType.HUMAN_INPUT_REQUIRED, workflow_id, step.id,
                   data=interaction.to_dict())

        await self.interactions.wait_for_response(interaction.id, self.approval_timeout)

    # ------------------------------------------------------------------
    # Inputs and conditions
    # ------------------------------------------------------------------

    @staticmethod
    def resolve_step_input(step_input: Dict[str, Any],
                           step_results: Dict[str, ExecutionResult],
                           context: Dict[str, Any]) -> Dict[str, Any]:
        """Substitute exact ${context.X} and ${step.<id>.<key>} references.

        Unresolvable references leave the field out.
        """
        resolved = {}

        for key, value in step_input.items():
            if isinstance(value, str):
                match = CONTEXT_REFERENCE.match(value)
                if match:
                    if match.group(1) in context:
                        resolved[key] = context[match.group(1)]
                    continue

                match = STEP_REFERENCE.match(value)
                if match:
                    result = step_results.get(match.group(1))
                    output = result.output if result is not None else None
                    if isinstance(output, dict) and match.group(2) in output:
                        resolved[key] = output[match.group(2)]
                    continue

            resolved[key] = value

        return resolved

    @classmethod
    def evaluate_conditions(cls, conditions: List[Condition],
                            result: ExecutionResult) -> bool:
        if not conditions:
            return True

        data = result.to_dict()
        return all(cls._evaluate_condition(condition, data) for condition in conditions)

    @classmethod
    def _evaluate_condition(cls, condition: Condition, data: Dict[str, Any]) -> bool:
        field_value = cls.get_field_value(data, condition.field)
        operator = condition.operator

        if operator == ConditionOperator.EQUALS:
            return field_value is not _MISSING and _strict_equals(field_value, condition.value)
        if operator == ConditionOperator.NOT_EQUALS:
            return field_value is _MISSING or not _strict_equals(field_value, condition.value)
        if operator == ConditionOperator.CONTAINS:
            if field_value is _MISSING:
                return False
            return _as_string(condition.value) in _as_string(field_value)
        if operator == ConditionOperator.GREATER_THAN:
            return _as_number(field_value) > _as_number(condition.value)
        if operator == ConditionOperator.LESS_THAN:
            return _as_number(field_value) < _as_number(condition.value)
        return False

    @staticmethod
    def get_field_value(data: Any, path: str) -> Any:
        current = data
        for part in path.split('.'):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return _MISSING
        return current

    # ------------------------------------------------------------------

    def _emit(self, event_type: EventType, workflow_id: str,
              step_id: Optional[str] = None, data: Any = None,
              metadata: Optional[Dict[str, Any]] = None):
        self.event_bus.publish_event(WorkflowEvent(
            type=event_type,
            workflow_id=workflow_id,
            step_id=step_id,
            data=data,
            metadata=metadata or {}
        ))


def _strict_equals(a: Any, b: Any) -> bool:
    # bool is an int subclass; keep True and 1 distinct
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


def _as_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, dict, list)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


def _as_number(value: Any) -> float:
    if value is _MISSING or value is None:
        return math.nan
    if isinstance(value, (bool, int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return math.nan
