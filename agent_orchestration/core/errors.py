"""
Error taxonomy for planning and workflow execution
"""
from typing import Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors"""
    code = "ORCHESTRATION_ERROR"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class NotFoundError(OrchestrationError):
    code = "NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class AgentNotFoundError(NotFoundError):
    def __init__(self, agent_id: str, message: Optional[str] = None):
        super().__init__(message or f"Agent {agent_id} not found")
        self.agent_id = agent_id


class InteractionNotFoundError(NotFoundError):
    def __init__(self, interaction_id: str):
        super().__init__(f"Interaction {interaction_id} not found")
        self.interaction_id = interaction_id


class AlreadyRunningError(OrchestrationError):
    code = "ALREADY_RUNNING"

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} is already running")
        self.workflow_id = workflow_id


class InvalidWorkflowStateError(OrchestrationError):
    code = "INVALID_STATE"


class PlanningFailedError(OrchestrationError):
    code = "PLANNING_FAILED"


class CapabilityMismatchError(PlanningFailedError):
    code = "CAPABILITY_MISMATCH"

    def __init__(self, agent_id: str, task_type: str):
        super().__init__(f"Agent {agent_id} does not have capability {task_type}")
        self.agent_id = agent_id
        self.task_type = task_type


class UnknownPlanAgentError(PlanningFailedError, AgentNotFoundError):
    """A plan step references an agent the registry cannot dispatch to"""
    code = "UNKNOWN_AGENT"

    def __init__(self, agent_id: str, reason: str = "not found in registry"):
        AgentNotFoundError.__init__(self, agent_id, f"Agent {agent_id} {reason}")


class CapabilitySchemaError(OrchestrationError):
    code = "CAPABILITY_SCHEMA"


class InvalidInputError(OrchestrationError):
    code = "INVALID_INPUT"


class ConditionsNotMetError(OrchestrationError):
    code = "CONDITIONS_NOT_MET"

    def __init__(self, step_id: str):
        super().__init__(f"Step {step_id} conditions not met")
        self.step_id = step_id


class ApprovalCancelledError(OrchestrationError):
    code = "APPROVAL_CANCELLED"


class ApprovalTimeoutError(OrchestrationError):
    code = "APPROVAL_TIMEOUT"


class InteractionAlreadyResolvedError(OrchestrationError):
    code = "INTERACTION_RESOLVED"


class StepExecutionFailedError(OrchestrationError):
    code = "STEP_EXECUTION_FAILED"

    def __init__(self, step_id: str, attempts: int, cause: Optional[Exception] = None,
                 error: Optional[str] = None):
        reason = error or (str(cause) if cause else "unknown error")
        super().__init__(
            f"Step {step_id} failed after {attempts} attempt(s): {reason}", cause
        )
        self.step_id = step_id
        self.attempts = attempts


class WorkflowExecutionFailedError(OrchestrationError):
    code = "WORKFLOW_EXECUTION_FAILED"

    def __init__(self, workflow_id: str, step_id: str, cause: Exception):
        super().__init__(f"Step {step_id} failed: {cause}", cause)
        self.workflow_id = workflow_id
        self.step_id = step_id


class SystemNotInitializedError(OrchestrationError):
    code = "NOT_INITIALIZED"

    def __init__(self):
        super().__init__("System not initialized. Call initialize() first.")


class CompletionServiceError(OrchestrationError):
    code = "COMPLETION_FAILED"
