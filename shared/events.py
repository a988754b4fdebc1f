"""
Domain events published to the event bus after an order write commits.

Every event carries the common envelope (event id, timestamp, correlation id) and an
``event_type`` tag; ``parse_event`` decodes a bus payload into the matching variant.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class EventType(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_DELETED = "ORDER_DELETED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventBase(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_version: int = 1
    correlation_id: str
    occurred_at: datetime = Field(default_factory=_utcnow)
    order_id: str

    model_config = {"extra": "ignore", "frozen": True}


class OrderCreatedEvent(EventBase):
    event_type: Literal["ORDER_CREATED"] = "ORDER_CREATED"
    customer_id: str
    customer_email: str
    status: str
    total_amount: float
    item_count: int
    version: int


class OrderUpdatedEvent(EventBase):
    event_type: Literal["ORDER_UPDATED"] = "ORDER_UPDATED"
    customer_id: str
    customer_email: str
    previous_status: str
    status: str
    changed_fields: list[str]
    version: int


class OrderDeletedEvent(EventBase):
    event_type: Literal["ORDER_DELETED"] = "ORDER_DELETED"


class PaymentProcessedEvent(EventBase):
    event_type: Literal["PAYMENT_PROCESSED"] = "PAYMENT_PROCESSED"
    customer_email: str
    payment_id: str
    amount: float
    status: str
    version: int


DomainEvent = Annotated[
    Union[OrderCreatedEvent, OrderUpdatedEvent, OrderDeletedEvent, PaymentProcessedEvent],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter[DomainEvent] = TypeAdapter(DomainEvent)


def parse_event(payload: bytes | str) -> DomainEvent:
    return _event_adapter.validate_json(payload)
