"""
Manager for human-in-the-loop interactions
"""
import asyncio
import logging
import uuid
import threading
from datetime import datetime
from collections import defaultdict
from typing import Dict, List, Any, Optional

from agent_orchestration.core.errors import (
    ApprovalCancelledError,
    ApprovalTimeoutError,
    InteractionAlreadyResolvedError,
    InteractionNotFoundError,
)
from agent_orchestration.core.models import (
    HumanInteraction,
    InteractionStatus,
    InteractionType,
)

logger = logging.getLogger(__name__)


class HumanInteractionManager:
    """Tracks interactions and wakes waiters when they are resolved"""

    def __init__(self, default_timeout: float = 300.0):
        self.default_timeout = default_timeout
        self.interactions: Dict[str, HumanInteraction] = {}
        self.waiters: Dict[str, List[asyncio.Future]] = defaultdict(list)
        self.lock = threading.RLock()

        logger.info("Human Interaction Manager initialized")

    def create_interaction(self, workflow_id: str, step_id: str, prompt: str,
                           interaction_type: InteractionType = InteractionType.APPROVAL,
                           options: Optional[List[str]] = None) -> HumanInteraction:
        """Create a new pending interaction"""
        interaction = HumanInteraction(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            step_id=step_id,
            prompt=prompt,
            type=interaction_type,
            options=options
        )

        with self.lock:
            self.interactions[interaction.id] = interaction

        logger.info(f"Created human interaction {interaction.id} for workflow {workflow_id}")
        return interaction

    def get_interaction(self, interaction_id: str) -> HumanInteraction:
        with self.lock:
            interaction = self.interactions.get(interaction_id)
        if interaction is None:
            raise InteractionNotFoundError(interaction_id)
        return interaction

    def get_pending_interactions(self, workflow_id: Optional[str] = None) -> List[HumanInteraction]:
        """Pending interactions, oldest first"""
        with self.lock:
            pending = [
                i for i in self.interactions.values()
                if i.status == InteractionStatus.PENDING
                and (workflow_id is None or i.workflow_id == workflow_id)
            ]
        return sorted(pending, key=lambda i: i.created_at)

    def respond(self, interaction_id: str, response: Any) -> HumanInteraction:
        """Complete a pending interaction with the responder's answer"""
        return self._resolve(interaction_id, InteractionStatus.COMPLETED, response)

    def cancel(self, interaction_id: str) -> HumanInteraction:
        return self._resolve(interaction_id, InteractionStatus.CANCELLED)

    def cancel_for_workflow(self, workflow_id: str) -> int:
        """Cancel every pending interaction of a workflow"""
        cancelled = 0
        for interaction in self.get_pending_interactions(workflow_id):
            try:
                self.cancel(interaction.id)
                cancelled += 1
            except InteractionAlreadyResolvedError:
                continue
        return cancelled

    def _resolve(self, interaction_id: str, status: InteractionStatus,
                 response: Any = None) -> HumanInteraction:
        with self.lock:
            interaction = self.interactions.get(interaction_id)
            if interaction is None:
                raise InteractionNotFoundError(interaction_id)

            if interaction.status != InteractionStatus.PENDING:
                logger.warning(
                    f"Interaction {interaction_id} already {interaction.status.value}"
                )
                raise InteractionAlreadyResolvedError(
                    f"Interaction {interaction_id} is already {interaction.status.value}"
                )

            interaction.status = status
            interaction.response = response
            interaction.responded_at = datetime.now()
            waiters = self.waiters.pop(interaction_id, [])

        for future in waiters:
            self._wake(future)

        logger.info(f"Interaction {interaction_id} {status.value}")
        return interaction

    @staticmethod
    def _wake(future: asyncio.Future):
        loop = future.get_loop()
        if loop.is_closed():
            return

        def set_done():
            if not future.done():
                future.set_result(None)

        loop.call_soon_threadsafe(set_done)

    async def wait_for_response(self, interaction_id: str,
                                timeout: Optional[float] = None) -> HumanInteraction:
        """Suspend until the interaction is resolved or the timeout elapses"""
        timeout = self.default_timeout if timeout is None else timeout

        with self.lock:
            interaction = self.interactions.get(interaction_id)
            if interaction is None:
                raise InteractionNotFoundError(interaction_id)
            future = None
            if interaction.status == InteractionStatus.PENDING:
                future = asyncio.get_running_loop().create_future()
                self.waiters[interaction_id].append(future)

        if future is not None:
            try:
                await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                with self.lock:
                    if interaction.status == InteractionStatus.PENDING:
                        interaction.status = InteractionStatus.CANCELLED
                        interaction.responded_at = datetime.now()
                        self.waiters.pop(interaction_id, None)
                        logger.warning(f"Interaction {interaction_id} timed out")
                        raise ApprovalTimeoutError(
                            f"Human approval timed out after {timeout}s"
                        )
            finally:
                with self.lock:
                    pending = self.waiters.get(interaction_id)
                    if pending and future in pending:
                        pending.remove(future)

        if interaction.status == InteractionStatus.CANCELLED:
            raise ApprovalCancelledError("Human approval cancelled")
        return interaction

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            counts = defaultdict(int)
            for interaction in self.interactions.values():
                counts[interaction.status.value] += 1

            return {
                'total_interactions': len(self.interactions),
                'pending_interactions': counts[InteractionStatus.PENDING.value],
                'completed_interactions': counts[InteractionStatus.COMPLETED.value],
                'cancelled_interactions': counts[InteractionStatus.CANCELLED.value],
                'timestamp': datetime.now().isoformat()
            }
