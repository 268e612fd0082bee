"""
Composition root wiring registry, knowledge store, conductor and engine
"""
import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Any, Optional, Iterable, Set

from agent_orchestration.agents.base import SpecializedAgent
from agent_orchestration.core.conductor import ConductorAgent
from agent_orchestration.core.errors import OrchestrationError, SystemNotInitializedError
from agent_orchestration.core.models import (
    EventType,
    HumanInteraction,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
)
from agent_orchestration.core.registry import CapabilityRegistry
from agent_orchestration.core.workflow_engine import WorkflowEngine
from agent_orchestration.integration.event_bus import EventBus, EventCallback
from agent_orchestration.integration.human_interaction_manager import HumanInteractionManager
from agent_orchestration.knowledge.knowledge_store import KnowledgeStore
from agent_orchestration.llm.completion_service import CompletionService, OpenAICompletionService

logger = logging.getLogger(__name__)

SYSTEM_DOCUMENTATION = """
AI Agent Orchestration System Documentation

This system provides automation through specialized AI agents that work
together to accomplish complex tasks.

Core Components:
1. Conductor Agent - Plans workflows from user requests
2. Specialized Agents - Execute specific domain capabilities
3. Knowledge Store - Stores and retrieves contextual information
4. Workflow Engine - Manages step execution and workflow state

The system supports:
- Multi-step workflow automation
- Human-in-the-loop approvals
- Parallel execution of adjacent steps
- Per-step retries with backoff
- Lifecycle events and metrics
"""


class OrchestrationSystem:
    """Wires the orchestration components together and tracks run metrics"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 completion_service: Optional[CompletionService] = None,
                 sleep=None):
        self.config = config or {}
        self.is_initialized = False

        self.registry = CapabilityRegistry()
        self.knowledge_store = KnowledgeStore()
        self.event_bus = EventBus()
        self.interaction_manager = HumanInteractionManager(
            self.config.get('approval_timeout_seconds', 300.0)
        )
        self.engine = WorkflowEngine(
            self.registry,
            event_bus=self.event_bus,
            interaction_manager=self.interaction_manager,
            approval_timeout=self.config.get('approval_timeout_seconds', 300.0),
            sleep=sleep
        )
        self.completion_service = completion_service or OpenAICompletionService(self.config)
        self.conductor = ConductorAgent(
            self.registry,
            self.knowledge_store,
            self.engine,
            self.completion_service,
            config=self.config
        )

        self.kafka_forwarder = None
        if self.config.get('kafka_servers'):
            from agent_orchestration.integration.kafka_broker import KafkaEventForwarder
            self.kafka_forwarder = KafkaEventForwarder(
                bootstrap_servers=self.config['kafka_servers'],
                topic=self.config.get('kafka_topic', 'workflow_events')
            )
            self.kafka_forwarder.attach(self.event_bus)

        self.metrics = {
            'total_workflows': 0,
            'completed_workflows': 0,
            'failed_workflows': 0,
            'start_time': datetime.now(),
        }
        self.workflow_durations: List[float] = []
        self.agent_metrics: Dict[str, Dict[str, Any]] = defaultdict(lambda: {
            'total_executions': 0,
            'successful_executions': 0,
            'failed_executions': 0,
            'total_execution_time': 0.0,
            'confidences': [],
            'last_execution_time': None,
        })
        self.background_tasks: Set[asyncio.Task] = set()
        self._started_at = time.monotonic()

        self.event_bus.subscribe(self._handle_event)
        logger.info("Orchestration system created")

    async def initialize(self, agents: Optional[Iterable[SpecializedAgent]] = None):
        """Register agents and seed the knowledge store; safe to call twice"""
        if self.is_initialized:
            return

        for agent in agents or ():
            self.register_agent(agent)

        self.knowledge_store.add_document(SYSTEM_DOCUMENTATION, {
            'type': 'system_documentation',
            'version': '1.0.0',
            'category': 'core'
        })

        for agent in self.get_available_agents():
            capabilities = "\n".join(
                f"- {cap.name}: {cap.description}" for cap in agent.get_capabilities()
            )
            self.knowledge_store.add_document(
                f"Agent: {agent.name}\n"
                f"Domain: {agent.domain.value}\n"
                f"Description: {agent.description}\n\n"
                f"Capabilities:\n{capabilities}",
                {'type': 'agent_documentation', 'agent_id': agent.id,
                 'domain': agent.domain.value}
            )

        self.is_initialized = True
        logger.info("AI Agent Orchestration System initialized successfully")

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def plan_workflow(self, request: str,
                            context: Optional[Dict[str, Any]] = None) -> Workflow:
        workflow = await self.conductor.plan_workflow(request, context)
        self.metrics['total_workflows'] += 1
        return workflow

    async def process_user_request(self, request: str,
                                   context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Plan a workflow and start executing it in the background"""
        if not self.is_initialized:
            raise SystemNotInitializedError()

        workflow = await self.plan_workflow(request, context)
        task = asyncio.create_task(self._execute_workflow_async(workflow.id))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

        return {
            'workflow_id': workflow.id,
            'workflow': workflow,
            'status': workflow.status,
        }

    async def _execute_workflow_async(self, workflow_id: str):
        try:
            await self.conductor.execute_workflow(workflow_id)
        except OrchestrationError as e:
            logger.error(f"Workflow {workflow_id} failed: {e}")

    async def execute_workflow(self, workflow_id: str):
        await self.conductor.execute_workflow(workflow_id)

    async def pause_workflow(self, workflow_id: str):
        await self.conductor.pause_workflow(workflow_id)

    async def resume_workflow(self, workflow_id: str):
        await self.conductor.resume_workflow(workflow_id)

    async def cancel_workflow(self, workflow_id: str):
        await self.conductor.cancel_workflow(workflow_id)

    async def get_workflow_status(self, workflow_id: str) -> WorkflowStatus:
        return await self.conductor.get_workflow_status(workflow_id)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.conductor.get_workflow(workflow_id)

    def get_workflow_events(self, workflow_id: str) -> List[WorkflowEvent]:
        return self.event_bus.get_history(workflow_id)

    # ------------------------------------------------------------------
    # Agents, interactions, knowledge
    # ------------------------------------------------------------------

    def register_agent(self, agent: SpecializedAgent):
        self.registry.register(agent)

    def unregister_agent(self, agent_id: str):
        self.registry.unregister(agent_id)

    def get_available_agents(self) -> List[SpecializedAgent]:
        return self.registry.get_all()

    def get_agents_by_domain(self, domain) -> List[SpecializedAgent]:
        return self.registry.get_by_domain(domain)

    def respond_to_human_interaction(self, interaction_id: str, response: Any):
        self.engine.respond_to_human_interaction(interaction_id, response)

    def cancel_human_interaction(self, interaction_id: str):
        self.interaction_manager.cancel(interaction_id)

    def get_pending_interactions(self, workflow_id: Optional[str] = None) -> List[HumanInteraction]:
        return self.interaction_manager.get_pending_interactions(workflow_id)

    def add_knowledge(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        return self.knowledge_store.add_document(content, metadata)

    def search_knowledge(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        return self.knowledge_store.search(query, limit)

    def subscribe(self, callback: EventCallback,
                  event_types: Optional[Iterable[EventType]] = None) -> str:
        return self.event_bus.subscribe(callback, event_types)

    def unsubscribe(self, subscriber_id: str):
        self.event_bus.unsubscribe(subscriber_id)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _handle_event(self, event: WorkflowEvent):
        if event.type == EventType.WORKFLOW_STARTED:
            logger.info(f"Workflow {event.workflow_id} started")
        elif event.type == EventType.WORKFLOW_COMPLETED:
            self.metrics['completed_workflows'] += 1
            self.workflow_durations.append(event.metadata.get('duration', 0.0))
            logger.info(f"Workflow {event.workflow_id} completed successfully")
        elif event.type == EventType.WORKFLOW_FAILED:
            self.metrics['failed_workflows'] += 1
            self.workflow_durations.append(event.metadata.get('duration', 0.0))
        elif event.type == EventType.HUMAN_INPUT_REQUIRED:
            logger.info(
                f"Human input required for workflow {event.workflow_id}, step {event.step_id}"
            )
        elif event.type in (EventType.STEP_COMPLETED, EventType.STEP_FAILED):
            agent_id = event.metadata.get('agent_id')
            if agent_id is None:
                return
            stats = self.agent_metrics[agent_id]
            stats['total_executions'] += 1
            stats['total_execution_time'] += event.metadata.get('duration', 0.0)
            stats['last_execution_time'] = event.timestamp
            if event.type == EventType.STEP_COMPLETED:
                stats['successful_executions'] += 1
                confidence = (event.data or {}).get('confidence')
                # only numeric confidences are averaged
                if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
                    stats['confidences'].append(confidence)
            else:
                stats['failed_executions'] += 1

    def get_system_metrics(self) -> Dict[str, Any]:
        agent_metrics = []
        for agent in self.get_available_agents():
            stats = self.agent_metrics.get(agent.id)
            total = stats['total_executions'] if stats else 0
            confidences = stats['confidences'] if stats else []
            agent_metrics.append({
                'agent_id': agent.id,
                'total_executions': total,
                'successful_executions': stats['successful_executions'] if stats else 0,
                'failed_executions': stats['failed_executions'] if stats else 0,
                'average_execution_time': stats['total_execution_time'] / total if total else 0.0,
                'last_execution_time': stats['last_execution_time'] if stats else None,
                'average_confidence': sum(confidences) / len(confidences) if confidences else 0.0,
            })

        durations = self.workflow_durations
        return {
            'total_workflows': self.metrics['total_workflows'],
            'active_workflows': len(self.engine.running_workflows),
            'completed_workflows': self.metrics['completed_workflows'],
            'failed_workflows': self.metrics['failed_workflows'],
            'average_workflow_duration': sum(durations) / len(durations) if durations else 0.0,
            'agent_metrics': agent_metrics,
            'knowledge': self.knowledge_store.get_storage_stats(),
            'interactions': self.interaction_manager.get_stats(),
            'uptime': time.monotonic() - self._started_at,
        }

    def get_system_status(self) -> Dict[str, Any]:
        return {
            'initialized': self.is_initialized,
            'agent_count': len(self.get_available_agents()),
            'uptime': time.monotonic() - self._started_at,
            'metrics': dict(self.metrics),
        }

    async def shutdown(self):
        logger.info("Shutting down AI Agent Orchestration System...")

        for task in list(self.background_tasks):
            task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)

        if self.kafka_forwarder is not None:
            self.kafka_forwarder.close()

        logger.info("System shutdown complete")
