import logging
from typing import Awaitable, Callable

from shared.events import (
    DomainEvent,
    EventType,
    OrderCreatedEvent,
    OrderDeletedEvent,
    OrderUpdatedEvent,
    PaymentProcessedEvent,
)
from shared.queue import MessageType, ProcessOrderData, QueueProducer, SendEmailData

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]

# Status changes the customer hears about. CONFIRMED is covered by the payment receipt.
NOTIFY_STATUSES = frozenset({"SHIPPED", "DELIVERED", "CANCELLED"})


class OrderEventHandlers:
    """Reactions to order events: kick off payment processing and queue customer e-mails."""

    def __init__(self, queue: QueueProducer):
        self._queue = queue

    def routes(self) -> dict[str, EventHandler]:
        return {
            EventType.ORDER_CREATED.value: self.order_created,
            EventType.ORDER_UPDATED.value: self.order_updated,
            EventType.ORDER_DELETED.value: self.order_deleted,
            EventType.PAYMENT_PROCESSED.value: self.payment_processed,
        }

    async def _email(self, event: DomainEvent, to: str, subject: str, body: str) -> None:
        await self._queue.send(
            MessageType.SEND_EMAIL,
            SendEmailData(to=to, subject=subject, body=body),
            correlation_id=event.correlation_id,
            key=event.order_id,
        )

    async def order_created(self, event: OrderCreatedEvent) -> None:
        await self._queue.send(
            MessageType.PROCESS_ORDER,
            ProcessOrderData(order_id=event.order_id, amount=event.total_amount),
            correlation_id=event.correlation_id,
            key=event.order_id,
        )
        await self._email(
            event,
            event.customer_email,
            f"Order {event.order_id} received",
            f"We received your order of {event.item_count} item(s) totalling {event.total_amount:.2f}.",
        )

    async def order_updated(self, event: OrderUpdatedEvent) -> None:
        if event.status == event.previous_status or event.status not in NOTIFY_STATUSES:
            logger.info(
                "Order updated, no notification needed",
                extra={"order_id": event.order_id, "changed_fields": event.changed_fields},
            )
            return
        await self._email(
            event,
            event.customer_email,
            f"Order {event.order_id} is {event.status.lower()}",
            f"Your order changed from {event.previous_status} to {event.status}.",
        )

    async def order_deleted(self, event: OrderDeletedEvent) -> None:
        logger.info("Order deleted", extra={"order_id": event.order_id})

    async def payment_processed(self, event: PaymentProcessedEvent) -> None:
        await self._email(
            event,
            event.customer_email,
            f"Payment received for order {event.order_id}",
            f"Payment {event.payment_id} of {event.amount:.2f} was received. Your order is confirmed.",
        )
