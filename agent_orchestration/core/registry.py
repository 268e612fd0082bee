"""
Registry indexing agents by id, domain and capability name
"""
import logging
import threading
from typing import Dict, List, Optional, Set

from agent_orchestration.agents.base import SpecializedAgent
from agent_orchestration.core.errors import AgentNotFoundError, CapabilitySchemaError
from agent_orchestration.core.models import Capability, Domain
from agent_orchestration.schemas.validation import validate_capability

logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Indexes agents by id, domain and capability name"""

    def __init__(self):
        self.agents: Dict[str, SpecializedAgent] = {}
        self.domain_index: Dict[Domain, Set[str]] = {}
        self.capability_index: Dict[str, Set[str]] = {}
        self.lock = threading.RLock()

    def register(self, agent: SpecializedAgent):
        """Register an agent, replacing any agent with the same id"""
        if not isinstance(agent.domain, Domain):
            raise CapabilitySchemaError(f"Agent {agent.id} has unknown domain {agent.domain!r}")

        seen = set()
        for capability in agent.get_capabilities():
            if capability.name in seen:
                raise CapabilitySchemaError(
                    f"Agent {agent.id} declares capability {capability.name} twice"
                )
            seen.add(capability.name)
            validate_capability(capability)

        with self.lock:
            if agent.id in self.agents:
                self._remove_from_indexes(self.agents[agent.id])

            self.agents[agent.id] = agent
            self.domain_index.setdefault(agent.domain, set()).add(agent.id)
            for capability in agent.get_capabilities():
                self.capability_index.setdefault(capability.name, set()).add(agent.id)

        logger.info(f"Agent {agent.name} ({agent.id}) registered successfully")

    def unregister(self, agent_id: str):
        """Remove an agent and all of its index entries"""
        with self.lock:
            agent = self.agents.pop(agent_id, None)
            if agent is None:
                raise AgentNotFoundError(agent_id)
            self._remove_from_indexes(agent)

        logger.info(f"Agent {agent.name} ({agent_id}) unregistered successfully")

    def _remove_from_indexes(self, agent: SpecializedAgent):
        domain_agents = self.domain_index.get(agent.domain)
        if domain_agents is not None:
            domain_agents.discard(agent.id)
            if not domain_agents:
                del self.domain_index[agent.domain]

        for capability in agent.get_capabilities():
            capability_agents = self.capability_index.get(capability.name)
            if capability_agents is not None:
                capability_agents.discard(agent.id)
                if not capability_agents:
                    del self.capability_index[capability.name]

    def get(self, agent_id: str) -> Optional[SpecializedAgent]:
        with self.lock:
            return self.agents.get(agent_id)

    def get_all(self) -> List[SpecializedAgent]:
        """Active agents only"""
        with self.lock:
            return [agent for agent in self.agents.values() if agent.is_active]

    def get_by_domain(self, domain) -> List[SpecializedAgent]:
        with self.lock:
            return self._active(self.domain_index.get(self._as_domain(domain), set()))

    def get_by_capability(self, capability: str) -> List[SpecializedAgent]:
        with self.lock:
            return self._active(self.capability_index.get(capability, set()))

    def _active(self, agent_ids: Set[str]) -> List[SpecializedAgent]:
        agents = [self.agents[agent_id] for agent_id in agent_ids if agent_id in self.agents]
        return [agent for agent in agents if agent.is_active]

    @staticmethod
    def _as_domain(domain) -> Optional[Domain]:
        if isinstance(domain, Domain):
            return domain
        try:
            return Domain(domain)
        except ValueError:
            return None

    def find_capability(self, agent_id: str, name: str) -> Optional[Capability]:
        agent = self.get(agent_id)
        if agent is None:
            return None
        for capability in agent.get_capabilities():
            if capability.name == name:
                return capability
        return None

    def get_domains(self) -> List[str]:
        with self.lock:
            return [domain.value for domain in self.domain_index]

    def get_capability_names(self) -> List[str]:
        with self.lock:
            return list(self.capability_index)

    def get_agent_stats(self) -> Dict[str, object]:
        with self.lock:
            by_domain = {
                domain.value: len(self._active(agent_ids))
                for domain, agent_ids in self.domain_index.items()
            }
            return {
                "total": len(self.agents),
                "active": len(self.get_all()),
                "by_domain": by_domain,
            }

    def search(self, domain=None, capability: Optional[str] = None,
               name: Optional[str] = None,
               is_active: Optional[bool] = None) -> List[SpecializedAgent]:
        """Conjunctive filter over every stored agent"""
        with self.lock:
            agents = list(self.agents.values())

        if domain is not None:
            wanted = self._as_domain(domain)
            agents = [a for a in agents if a.domain == wanted]

        if capability is not None:
            agents = [
                a for a in agents
                if any(cap.name == capability for cap in a.get_capabilities())
            ]

        if name is not None:
            agents = [a for a in agents if name.lower() in a.name.lower()]

        if is_active is not None:
            agents = [a for a in agents if a.is_active == is_active]

        return agents
