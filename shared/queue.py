"""
Work-queue envelope and producer.

Messages are ``{"type": ..., "data": ...}`` JSON documents on a Kafka topic. Message id,
delivery attempt and correlation id travel as headers so a redelivered message keeps
its identity while the body stays untouched.
"""

import logging
import uuid
from enum import Enum
from typing import Annotated, Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError
from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictStr
from pydantic.alias_generators import to_camel

from shared.errors import PublishFailure
from shared.retry import RetryPolicy, retry
from shared.tracing import outgoing_headers

logger = logging.getLogger(__name__)

HEADER_MESSAGE_ID = "message-id"
HEADER_ATTEMPT = "delivery-attempt"
HEADER_CORRELATION_ID = "correlation-id"


class MessageType(str, Enum):
    PROCESS_ORDER = "PROCESS_ORDER"
    SEND_EMAIL = "SEND_EMAIL"


class QueueMessage(BaseModel):
    type: StrictStr
    data: Any = None

    model_config = {"extra": "ignore"}


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ProcessOrderData(_Payload):
    order_id: Annotated[StrictStr, Field(min_length=1)]
    payment_id: StrictStr | None = None
    amount: Annotated[float, Field(ge=0)] | None = None


class SendEmailData(_Payload):
    to: EmailStr
    subject: Annotated[StrictStr, Field(min_length=1)]
    body: StrictStr


class QueueProducer:
    """Enqueues work messages; Kafka errors surface as PublishFailure after retries."""

    def __init__(self, producer: AIOKafkaProducer, topic: str, policy: RetryPolicy):
        self._producer = producer
        self._topic = topic
        self._policy = policy

    async def send(
        self,
        message_type: MessageType | str,
        data: BaseModel | dict | None,
        *,
        correlation_id: str,
        key: str | None = None,
    ) -> str:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
        message = QueueMessage(type=str(getattr(message_type, "value", message_type)), data=data)
        message_id = str(uuid.uuid4())
        await self.send_raw(
            message.model_dump_json().encode(),
            key=key,
            message_id=message_id,
            attempt=1,
            correlation_id=correlation_id,
        )
        logger.info(
            "Enqueued %s message",
            message.type,
            extra={"message_id": message_id, "message_type": message.type, "topic": self._topic},
        )
        return message_id

    async def send_raw(
        self,
        value: bytes,
        *,
        key: str | None,
        message_id: str,
        attempt: int,
        correlation_id: str | None,
        topic: str | None = None,
    ) -> None:
        headers = outgoing_headers(
            message_id=message_id,
            delivery_attempt=str(attempt),
            correlation_id=correlation_id,
        )

        async def _send() -> None:
            try:
                await self._producer.send_and_wait(
                    topic or self._topic,
                    key=key.encode() if key else None,
                    value=value,
                    headers=headers,
                )
            except KafkaError as exc:
                raise PublishFailure(details={"topic": topic or self._topic}) from exc

        await retry(_send, self._policy, description=f"send to {topic or self._topic}")
