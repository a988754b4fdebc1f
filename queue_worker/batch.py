"""
Batch processing with per-message failure isolation.

Each message in a batch runs as its own task under its own correlation id. A failing
message is captured in the BatchResult instead of aborting its siblings, so the
caller can redeliver or dead-letter exactly the failed ones.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence

from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError

from app.utils.logging import correlation_context
from shared.errors import OrderError, ValidationFailure
from shared.queue import QueueMessage
from shared.tracing import incoming_context
from shared.validation import violations_from

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MessageHandler = Callable[[Any, str], Awaitable[None]]

PROCESSED = "processed"
IGNORED = "ignored"


@dataclass(frozen=True)
class QueueRecord:
    message_id: str
    body: bytes
    attempt: int = 1
    correlation_id: str | None = None
    key: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # Log position, when the record came off a partition.
    topic: str | None = None
    partition: int | None = None
    offset: int | None = None


@dataclass(frozen=True)
class MessageFailure:
    record: QueueRecord
    error: Exception

    @property
    def permanent(self) -> bool:
        # Unclassified errors get the benefit of the doubt and are redelivered.
        return isinstance(self.error, OrderError) and not self.error.retryable


@dataclass
class BatchResult:
    processed: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    failures: list[MessageFailure] = field(default_factory=list)
    # Failures that could be neither redelivered nor dead-lettered.
    unsettled: list[QueueRecord] = field(default_factory=list)

    @property
    def failed_ids(self) -> list[str]:
        return [f.record.message_id for f in self.failures]


class MessageDispatcher:
    """Routes a message to the handler registered for its ``type``."""

    def __init__(self, handlers: Mapping[str, MessageHandler]):
        self._handlers = dict(handlers)

    async def dispatch(self, message: QueueMessage, correlation_id: str) -> str:
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.warning("Unknown message type, acknowledging", extra={"message_type": message.type})
            return IGNORED
        await handler(message.data, correlation_id)
        return PROCESSED


def decode_message(body: bytes) -> QueueMessage:
    try:
        return QueueMessage.model_validate_json(body)
    except PydanticValidationError as exc:
        raise ValidationFailure(violations_from(exc, root="message"), "Malformed queue message") from exc


async def _process_one(record: QueueRecord, dispatcher: MessageDispatcher) -> str:
    correlation_id = record.correlation_id or record.message_id
    with correlation_context(correlation_id), tracer.start_as_current_span(
        "queue.process", context=incoming_context(record.headers)
    ):
        logger.info(
            "Processing message",
            extra={"message_id": record.message_id, "attempt": record.attempt},
        )
        message = decode_message(record.body)
        outcome = await dispatcher.dispatch(message, correlation_id)
        logger.info(
            "Message processed successfully",
            extra={"message_id": record.message_id, "message_type": message.type},
        )
        return outcome


async def process_batch(records: Sequence[QueueRecord], dispatcher: MessageDispatcher) -> BatchResult:
    outcomes = await asyncio.gather(
        *(_process_one(record, dispatcher) for record in records),
        return_exceptions=True,
    )

    result = BatchResult()
    for record, outcome in zip(records, outcomes):
        if isinstance(outcome, Exception):
            logger.error(
                "Error processing message",
                extra={
                    "message_id": record.message_id,
                    "correlation_id": record.correlation_id,
                    "error": str(outcome),
                    "error_type": type(outcome).__name__,
                },
            )
            result.failures.append(MessageFailure(record, outcome))
        elif isinstance(outcome, BaseException):
            # Cancellation of a sibling task is not a message failure.
            raise outcome
        elif outcome == IGNORED:
            result.ignored.append(record.message_id)
        else:
            result.processed.append(record.message_id)

    if result.failures:
        logger.error(
            "Some messages failed to process",
            extra={"failed_messages": result.failed_ids, "batch_size": len(records)},
        )
    return result
