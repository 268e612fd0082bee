"""
Kafka forwarder publishing workflow events for external consumers
"""
import json
import logging
import uuid
from datetime import datetime
from typing import Dict, Any, Optional

from confluent_kafka import Producer

from agent_orchestration.core.models import WorkflowEvent
from agent_orchestration.integration.event_bus import EventBus

logger = logging.getLogger(__name__)


class KafkaEventForwarder:
    """Subscribes to an EventBus and produces every event to a Kafka topic"""

    def __init__(self, bootstrap_servers: str = 'localhost:9092',
                 topic: str = 'workflow_events',
                 producer_config: Optional[Dict[str, Any]] = None):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.subscriber_id: Optional[str] = None
        self.bus: Optional[EventBus] = None

        config = {
            'bootstrap.servers': self.bootstrap_servers,
            'client.id': 'agent-orchestration-producer',
            'acks': 'all',
            'retries': 3,
            'max.in.flight.requests.per.connection': 1,
            'enable.idempotence': True
        }
        config.update(producer_config or {})

        try:
            self.producer = Producer(config)
            logger.info("Kafka producer initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

    def attach(self, bus: EventBus) -> str:
        self.bus = bus
        self.subscriber_id = bus.subscribe(self.forward)
        return self.subscriber_id

    def build_message(self, event: WorkflowEvent) -> Dict[str, Any]:
        return {
            'message_id': str(uuid.uuid4()),
            'timestamp': datetime.now().isoformat(),
            'event_type': event.type.value,
            'workflow_id': event.workflow_id,
            'step_id': event.step_id,
            'event': event.to_dict(),
            'metadata': {
                'source': 'agent_orchestration',
                'version': '1.0'
            }
        }

    def forward(self, event: WorkflowEvent) -> bool:
        """Produce one event; delivery is at-most-once best effort"""
        try:
            message_bytes = json.dumps(self.build_message(event), default=str).encode('utf-8')
            self.producer.produce(
                topic=self.topic,
                value=message_bytes,
                key=event.workflow_id.encode('utf-8'),
                callback=self._delivery_callback
            )
            # Serve delivery callbacks without blocking the event loop
            self.producer.poll(0)
            logger.debug(f"Published event to {self.topic}: {event.type.value}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish event to {self.topic}: {e}")
            return False

    def _delivery_callback(self, err, msg):
        if err:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.debug(f"Message delivered to {msg.topic()} [{msg.partition()}]")

    def close(self):
        if self.bus is not None and self.subscriber_id is not None:
            self.bus.unsubscribe(self.subscriber_id)
            self.subscriber_id = None

        self.producer.flush(timeout=10)
        logger.info("Kafka forwarder shut down")
