# agent_orchestration/agents/llm_agent.py
import json
import logging
from typing import Dict, Any, List, Optional

from agent_orchestration.agents.base import SpecializedAgent
from agent_orchestration.core.models import Capability, Domain, ExecutionResult, Task
from agent_orchestration.llm.completion_service import CompletionService, JSON_OBJECT

logger = logging.getLogger(__name__)


class LLMAgent(SpecializedAgent):
    """Agent that fulfils each of its capabilities with one completion call"""

    def __init__(self, name: str, description: str, domain: Domain,
                 capabilities: List[Capability],
                 completion_service: CompletionService,
                 config: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(name, description, domain, capabilities, **kwargs)
        self.config = config or {}
        self.completion_service = completion_service
        self.temperature = self.config.get('temperature', 0.7)
        self.max_tokens = self.config.get('max_tokens', 1000)
        # capability name -> extra instructions
        self.instructions: Dict[str, str] = self.config.get('instructions', {})

    def build_prompt(self, capability: Capability, task: Task) -> str:
        instructions = self.instructions.get(capability.name, '')
        return (
            f"You are the {self.name}. {self.description}\n\n"
            f"Task: {capability.name} - {capability.description}\n"
            f"{instructions}\n\n"
            f"Input data: {json.dumps(task.input, indent=2, default=str)}\n\n"
            f"Expected output schema: {json.dumps(capability.output_schema, indent=2)}\n\n"
            "Respond with a JSON object only. Include a numeric \"confidence\" "
            "field between 0 and 1."
        )

    async def execute(self, task: Task) -> ExecutionResult:
        """Execute AI task"""
        capability = self.get_capability(task.type)
        if capability is None:
            return ExecutionResult(
                success=False,
                error=f"Unknown task type: {task.type}",
                confidence=0
            )

        try:
            result = await self.completion_service.complete(
                self.build_prompt(capability, task),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format=JSON_OBJECT
            )
        except Exception as e:
            logger.error(f"LLM agent execution failed: {e}")
            raise

        # Parse result if it's JSON
        try:
            output = json.loads(result)
        except json.JSONDecodeError:
            output = {"response": result}

        confidence = None
        if isinstance(output, dict):
            confidence = _as_confidence(output.pop("confidence", None))

        return ExecutionResult(
            success=True,
            output=output,
            confidence=confidence,
            metadata={"agent": self.name, "task_type": task.type}
        )


def _as_confidence(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric confidence {value!r}")
        return None
