import logging
from abc import ABC, abstractmethod

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from shared.errors import PublishFailure
from shared.events import DomainEvent
from shared.retry import RetryPolicy, retry
from shared.tracing import outgoing_headers

logger = logging.getLogger(__name__)


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: DomainEvent) -> None:
        """Hand the event to the bus. Raises PublishFailure if the bus refuses it."""


class KafkaEventPublisher(EventPublisher):
    """Publishes domain events keyed by order id, so one order's events share a partition."""

    def __init__(self, producer: AIOKafkaProducer, topic: str, policy: RetryPolicy):
        self._producer = producer
        self._topic = topic
        self._policy = policy

    async def publish(self, event: DomainEvent) -> None:
        headers = outgoing_headers(
            correlation_id=event.correlation_id,
            event_type=event.event_type,
        )

        async def _send() -> None:
            try:
                await self._producer.send_and_wait(
                    self._topic,
                    key=event.order_id.encode(),
                    value=event.model_dump_json().encode(),
                    headers=headers,
                )
            except KafkaError as exc:
                raise PublishFailure(details={"topic": self._topic}) from exc

        await retry(_send, self._policy, description=f"publish {event.event_type}")
        logger.info(
            "Published %s event",
            event.event_type,
            extra={"order_id": event.order_id, "event_id": str(event.event_id)},
        )
