"""
Base class for capability providers dispatched by the workflow engine
"""
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional

from agent_orchestration.core.models import Capability, Domain, ExecutionResult, Task


class SpecializedAgent(ABC):
    """A capability provider, polymorphic over execute/get_capabilities"""

    def __init__(self, name: str, description: str, domain: Domain,
                 capabilities: List[Capability], version: str = "1.0.0",
                 agent_id: Optional[str] = None, is_active: bool = True):
        self.id = agent_id or str(uuid.uuid4())
        self.name = name
        self.description = description
        self.domain = domain
        self.version = version
        self.is_active = is_active
        self.capabilities = list(capabilities)

    @abstractmethod
    async def execute(self, task: Task) -> ExecutionResult:
        """Run one task and report the outcome"""

    def get_capabilities(self) -> List[Capability]:
        return self.capabilities

    def get_capability(self, name: str) -> Optional[Capability]:
        for capability in self.capabilities:
            if capability.name == name:
                return capability
        return None

    def validate(self, input_data: Dict[str, Any]) -> bool:
        """Agent-specific input check run before dispatch"""
        return True

    def describe(self) -> Dict[str, Any]:
        """Catalogue entry used in planning prompts"""
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain.value,
            "description": self.description,
            "capabilities": [
                {
                    "name": cap.name,
                    "description": cap.description,
                    "inputSchema": cap.input_schema,
                }
                for cap in self.capabilities
            ],
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.name} ({self.id})>"
