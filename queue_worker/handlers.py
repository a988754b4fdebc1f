import logging
from typing import Any

from app.services.order_service import OrderService
from queue_worker.batch import MessageHandler
from queue_worker.mailer import EmailSender
from shared.queue import MessageType, ProcessOrderData, SendEmailData
from shared.validation import validate

logger = logging.getLogger(__name__)


def build_handlers(order_service: OrderService, email_sender: EmailSender) -> dict[str, MessageHandler]:
    async def process_order(data: Any, correlation_id: str) -> None:
        payload = validate(ProcessOrderData, data, root="data").unwrap()
        order = await order_service.process_payment(
            payload.order_id,
            correlation_id=correlation_id,
            payment_id=payload.payment_id,
            amount=payload.amount,
        )
        logger.info(
            "PROCESS_ORDER handled",
            extra={"order_id": order.order_id, "status": order.status.value},
        )

    async def send_email(data: Any, correlation_id: str) -> None:
        payload = validate(SendEmailData, data, root="data").unwrap()
        await email_sender.send(str(payload.to), payload.subject, payload.body)

    return {
        MessageType.PROCESS_ORDER.value: process_order,
        MessageType.SEND_EMAIL.value: send_email,
    }
