"""
In-process publish/subscribe channel for workflow lifecycle events
"""
import logging
import threading
import uuid
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional

from agent_orchestration.core.models import EventType, WorkflowEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[WorkflowEvent], None]


class EventBus:
    """Delivers events synchronously, in publish order, to subscribers"""

    def __init__(self, keep_history: bool = True):
        self.keep_history = keep_history
        self.callbacks: Dict[str, Dict] = {}
        self.history: Dict[str, List[WorkflowEvent]] = defaultdict(list)
        self.lock = threading.RLock()

    def subscribe(self, callback: EventCallback,
                  event_types: Optional[Iterable[EventType]] = None) -> str:
        """Register a callback, optionally for some event types only"""
        subscriber_id = str(uuid.uuid4())
        with self.lock:
            self.callbacks[subscriber_id] = {
                'callback': callback,
                'event_types': frozenset(event_types) if event_types else None
            }
        return subscriber_id

    def unsubscribe(self, subscriber_id: str):
        with self.lock:
            if self.callbacks.pop(subscriber_id, None) is not None:
                logger.info(f"Unsubscribed consumer: {subscriber_id}")

    def publish_event(self, event: WorkflowEvent):
        with self.lock:
            if self.keep_history:
                self.history[event.workflow_id].append(event)
            subscribers = list(self.callbacks.values())

        logger.debug(f"Publishing {event.type.value} for workflow {event.workflow_id}")

        for info in subscribers:
            if info['event_types'] is not None and event.type not in info['event_types']:
                continue
            try:
                info['callback'](event)
            except Exception as e:
                logger.error(f"Callback execution failed: {e}")

    def get_history(self, workflow_id: str) -> List[WorkflowEvent]:
        with self.lock:
            return list(self.history.get(workflow_id, []))

    def subscriber_count(self) -> int:
        with self.lock:
            return len(self.callbacks)
