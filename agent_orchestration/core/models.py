"""
Core data model shared by the registry, conductor and workflow engine
"""
from typing import Dict, List, Any, Optional
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field


class Domain(str, Enum):
    """Closed set of agent domains"""
    BUSINESS = "business"
    CODE = "code"
    DATA = "data"
    CONTENT = "content"
    RESEARCH = "research"
    OPERATIONS = "operations"
    GENERAL = "general"


class TaskStatus(Enum):
    """Status of a task"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    WAITING_FOR_HUMAN = "waiting_for_human"


class WorkflowStatus(Enum):
    """Status of a workflow"""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.CANCELLED,
})

# Allowed workflow status transitions
WORKFLOW_TRANSITIONS = {
    WorkflowStatus.CREATED: {WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED},
    WorkflowStatus.RUNNING: {
        WorkflowStatus.PAUSED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    # COMPLETED/FAILED here settle a run whose last group was in flight at pause
    WorkflowStatus.PAUSED: {
        WorkflowStatus.RUNNING,
        WorkflowStatus.CANCELLED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}


class BackoffStrategy(Enum):
    """Delay growth between retry attempts"""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class ConditionOperator(Enum):
    """Operators a step condition may use"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class InteractionStatus(Enum):
    """Status of a human interaction"""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InteractionType(Enum):
    """Kinds of input requested from a human"""
    APPROVAL = "approval"
    INPUT = "input"
    CLARIFICATION = "clarification"


class EventType(Enum):
    """Lifecycle events emitted by the workflow engine"""
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    HUMAN_INPUT_REQUIRED = "human_input_required"


@dataclass
class Capability:
    """A named, schema-described operation an agent exposes"""
    id: str
    name: str
    description: str
    domain: Domain
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    output_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    required_tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "domain": self.domain.value,
            "input_schema": self.input_schema,
            "output_schema": self.output_schema,
            "required_tools": list(self.required_tools),
        }


@dataclass
class RetryPolicy:
    """Per-step retry configuration; delays are in milliseconds"""
    max_retries: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: int = 1000
    max_delay: int = 10000

    def delay_for(self, attempt: int) -> int:
        """Delay in ms to wait after a failed attempt"""
        if self.backoff_strategy == BackoffStrategy.LINEAR:
            return min(self.base_delay * (attempt + 1), self.max_delay)
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxRetries": self.max_retries,
            "backoffStrategy": self.backoff_strategy.value,
            "baseDelay": self.base_delay,
            "maxDelay": self.max_delay,
        }


@dataclass
class Condition:
    """Check applied to a step result after execution"""
    field: str
    operator: ConditionOperator
    value: Any = None
    # Carried from the plan but never consulted for routing
    next_step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
        }
        if self.next_step_id is not None:
            data["nextStepId"] = self.next_step_id
        return data


@dataclass
class WorkflowStep:
    """One unit of work bound to a single agent capability"""
    id: str
    agent_id: str
    task_type: str
    input: Dict[str, Any] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    parallel: bool = False
    human_approval_required: bool = False
    retry_policy: Optional[RetryPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "taskType": self.task_type,
            "input": self.input,
            "conditions": [c.to_dict() for c in self.conditions],
            "parallel": self.parallel,
            "humanApprovalRequired": self.human_approval_required,
            "retryPolicy": self.retry_policy.to_dict() if self.retry_policy else None,
        }


@dataclass
class Workflow:
    """An ordered plan of steps addressing one user request"""
    id: str
    name: str
    description: str
    steps: List[WorkflowStep] = field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.CREATED
    current_step_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    created_by: str = "system"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def touch(self):
        self.updated_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "steps": [s.to_dict() for s in self.steps],
            "status": self.status.value,
            "current_step_id": self.current_step_id,
            "context": self.context,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "created_by": self.created_by,
            "metadata": self.metadata,
        }


@dataclass
class Task:
    """A single dispatch of a step to an agent"""
    id: str
    type: str
    input: Dict[str, Any]
    context: Dict[str, Any] = field(default_factory=dict)
    priority: int = 1
    retry_count: int = 0
    max_retries: int = 3
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    parent_workflow_id: Optional[str] = None

    def set_status(self, status: TaskStatus):
        self.status = status
        self.updated_at = datetime.now()


@dataclass
class ExecutionResult:
    """Result of an agent execution"""
    success: bool
    output: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    review_required: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "confidence": self.confidence,
            "review_required": self.review_required,
        }


@dataclass
class HumanInteraction:
    """A blocking approval/input request raised mid-workflow"""
    id: str
    workflow_id: str
    step_id: str
    prompt: str
    type: InteractionType = InteractionType.APPROVAL
    options: Optional[List[str]] = None
    response: Any = None
    status: InteractionStatus = InteractionStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    responded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "type": self.type.value,
            "prompt": self.prompt,
            "options": self.options,
            "response": self.response,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }


@dataclass
class WorkflowEvent:
    """Lifecycle event published on the event bus"""
    type: EventType
    workflow_id: str
    step_id: Optional[str] = None
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "data": self.data,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }
