"""
Conductor agent: plans workflows from natural-language requests and hands
them to the workflow engine
"""
import json
import logging
import threading
import uuid
from typing import Dict, List, Any, Optional

from agent_orchestration.core.errors import (
    CapabilityMismatchError,
    PlanningFailedError,
    UnknownPlanAgentError,
    WorkflowNotFoundError,
)
from agent_orchestration.core.models import (
    BackoffStrategy,
    Condition,
    ConditionOperator,
    RetryPolicy,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
)
from agent_orchestration.core.registry import CapabilityRegistry
from agent_orchestration.core.workflow_engine import WorkflowEngine
from agent_orchestration.knowledge.knowledge_store import KnowledgeStore
from agent_orchestration.llm.completion_service import CompletionService, JSON_OBJECT
from agent_orchestration.schemas.validation import validate_plan

logger = logging.getLogger(__name__)

CONTEXT_SNIPPETS = 5
DEFAULT_CONFIDENCE = 0.8

PLANNING_PROMPT = """
You are an AI Conductor Agent responsible for planning workflows to fulfill user requests.
Analyze the user request and create a detailed execution plan using available agents.

USER REQUEST: {request}

CONTEXT: {context}

RELEVANT KNOWLEDGE: {knowledge}

AVAILABLE AGENTS AND CAPABILITIES:
{agents}

Create a workflow plan with the following JSON structure:
{{
  "name": "Descriptive workflow name",
  "description": "Detailed description of what this workflow accomplishes",
  "confidence": 0.85,
  "steps": [
    {{
      "id": "step_1",
      "agentId": "agent_id_from_available_agents",
      "taskType": "capability_name_of_that_agent",
      "input": {{
        "key": "value or ${{context.key}} or ${{step.step_id.output_key}}"
      }},
      "conditions": [
        {{"field": "output.key", "operator": "equals", "value": true}}
      ],
      "parallel": false,
      "humanApprovalRequired": false,
      "retryPolicy": {{
        "maxRetries": 3,
        "backoffStrategy": "exponential",
        "baseDelay": 1000,
        "maxDelay": 10000
      }}
    }}
  ]
}}

IMPORTANT GUIDELINES:
1. Only use agents that exist in the available agents list
2. taskType must be the name of one of that agent's capabilities
3. Input fields must match the capability's input schema
4. Mark a step "parallel" to run it together with the step before it
5. Add human approval for critical or irreversible actions
6. Provide realistic confidence scores
7. Make steps atomic and focused on single responsibilities

Respond with valid JSON only.
"""


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=3,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        base_delay=1000,
        max_delay=10000
    )


class ConductorAgent:
    """Plans workflows and delegates their lifecycle to the engine"""

    def __init__(self, registry: CapabilityRegistry, knowledge_store: KnowledgeStore,
                 engine: WorkflowEngine, completion_service: CompletionService,
                 config: Optional[Dict[str, Any]] = None,
                 name: str = 'ConductorAgent'):
        self.id = str(uuid.uuid4())
        self.name = name
        self.config = config or {}
        self.registry = registry
        self.knowledge_store = knowledge_store
        self.engine = engine
        self.completion_service = completion_service
        self.workflows: Dict[str, Workflow] = {}
        self.lock = threading.RLock()

    async def plan_workflow(self, request: str,
                            context: Optional[Dict[str, Any]] = None) -> Workflow:
        """Turn a request into a validated workflow in CREATED status"""
        context = context or {}

        relevant_context = self.knowledge_store.search(request, CONTEXT_SNIPPETS)
        agent_catalogue = [agent.describe() for agent in self.registry.get_all()]

        prompt = self.create_planning_prompt(request, context, relevant_context, agent_catalogue)

        try:
            response = await self.completion_service.complete(
                prompt,
                temperature=self.config.get('planning_temperature', 0.3),
                max_tokens=self.config.get('planning_max_tokens', 2000),
                response_format=JSON_OBJECT
            )
        except Exception as e:
            logger.error(f"Planning completion failed: {e}")
            raise PlanningFailedError(f"Failed to plan workflow: {e}", e)

        try:
            plan = json.loads(response)
        except (TypeError, json.JSONDecodeError) as e:
            raise PlanningFailedError(f"Failed to plan workflow: invalid JSON plan ({e})", e)

        validate_plan(plan)
        steps = self.validate_and_create_steps(plan['steps'])

        workflow = Workflow(
            id=str(uuid.uuid4()),
            name=plan.get('name') or f"Workflow for: {request[:50]}...",
            description=plan.get('description') or request,
            steps=steps,
            status=WorkflowStatus.CREATED,
            context={**context, 'user_request': request, 'relevant_context': relevant_context},
            created_by='system',
            metadata={
                'original_request': request,
                'planning_confidence': plan.get('confidence', DEFAULT_CONFIDENCE)
            }
        )

        with self.lock:
            self.workflows[workflow.id] = workflow
        self.engine.track_workflow(workflow)
        self.knowledge_store.store(f"workflow:{workflow.id}", workflow.to_dict())

        logger.info(f"Planned workflow {workflow.id} with {len(steps)} step(s)")
        return workflow

    def create_planning_prompt(self, request: str, context: Dict[str, Any],
                               relevant_context: List[Dict[str, Any]],
                               agent_catalogue: List[Dict[str, Any]]) -> str:
        return PLANNING_PROMPT.format(
            request=request,
            context=json.dumps(context, indent=2, default=str),
            knowledge=json.dumps(relevant_context, indent=2, default=str),
            agents=json.dumps(agent_catalogue, indent=2, default=str)
        )

    def validate_and_create_steps(self, raw_steps: List[Dict[str, Any]]) -> List[WorkflowStep]:
        steps = []
        seen_ids = set()

        for index, raw in enumerate(raw_steps):
            agent_id = raw['agentId']
            task_type = raw['taskType']

            agent = self.registry.get(agent_id)
            if agent is None:
                raise UnknownPlanAgentError(agent_id)
            if not agent.is_active:
                raise UnknownPlanAgentError(agent_id, "is not active")

            if not any(cap.name == task_type for cap in agent.get_capabilities()):
                raise CapabilityMismatchError(agent_id, task_type)

            step_id = raw.get('id') or f"step_{index + 1}"
            if step_id in seen_ids:
                raise PlanningFailedError(f"Duplicate step id {step_id} in plan")
            seen_ids.add(step_id)

            steps.append(WorkflowStep(
                id=step_id,
                agent_id=agent_id,
                task_type=task_type,
                input=raw.get('input') or {},
                conditions=[self._build_condition(c) for c in raw.get('conditions') or []],
                parallel=bool(raw.get('parallel', False)),
                human_approval_required=bool(raw.get('humanApprovalRequired', False)),
                retry_policy=self._build_retry_policy(raw.get('retryPolicy'))
            ))

        return steps

    @staticmethod
    def _build_condition(raw: Dict[str, Any]) -> Condition:
        return Condition(
            field=raw['field'],
            operator=ConditionOperator(raw['operator']),
            value=raw.get('value'),
            next_step_id=raw.get('nextStepId')
        )

    @staticmethod
    def _build_retry_policy(raw: Optional[Dict[str, Any]]) -> RetryPolicy:
        if not raw:
            return default_retry_policy()
        defaults = default_retry_policy()
        return RetryPolicy(
            max_retries=int(raw.get('maxRetries', defaults.max_retries)),
            backoff_strategy=BackoffStrategy(
                raw.get('backoffStrategy', defaults.backoff_strategy.value)
            ),
            base_delay=raw.get('baseDelay', defaults.base_delay),
            max_delay=raw.get('maxDelay', defaults.max_delay)
        )

    # ------------------------------------------------------------------
    # Lifecycle delegation
    # ------------------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Workflow:
        with self.lock:
            workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def list_workflows(self) -> List[Workflow]:
        with self.lock:
            return list(self.workflows.values())

    async def execute_workflow(self, workflow_id: str):
        workflow = self.get_workflow(workflow_id)
        try:
            await self.engine.execute_workflow(workflow)
        finally:
            self._persist(workflow)

    async def pause_workflow(self, workflow_id: str):
        workflow = self.get_workflow(workflow_id)
        try:
            self.engine.pause_workflow(workflow_id)
        finally:
            self._persist(workflow)

    async def resume_workflow(self, workflow_id: str):
        workflow = self.get_workflow(workflow_id)
        try:
            await self.engine.resume_workflow(workflow_id)
        finally:
            self._persist(workflow)

    async def cancel_workflow(self, workflow_id: str):
        workflow = self.get_workflow(workflow_id)
        try:
            self.engine.cancel_workflow(workflow_id)
        finally:
            self._persist(workflow)

    async def get_workflow_status(self, workflow_id: str) -> WorkflowStatus:
        return self.get_workflow(workflow_id).status

    def _persist(self, workflow: Workflow):
        self.knowledge_store.store(f"workflow:{workflow.id}", workflow.to_dict())
