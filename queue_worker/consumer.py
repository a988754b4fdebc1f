"""
At-least-once batch consumer for the work queue.

Guarantees:
  - Isolation: every message in a polled batch is processed independently
  - Partial failure: only the failed messages are re-enqueued (attempt + 1)
  - DLQ: permanent failures, and messages out of delivery attempts, go to the dead-letter topic
  - Offsets are committed only up to the first message that was not processed, re-enqueued
    or dead-lettered; the consumer rewinds there so Kafka delivers it again
"""

import logging

from aiokafka import AIOKafkaConsumer
from aiokafka.structs import TopicPartition

from queue_worker.batch import BatchResult, MessageDispatcher, MessageFailure, QueueRecord, process_batch
from queue_worker.metrics import BATCH_SIZE, MESSAGES_CONSUMED
from shared.errors import PublishFailure
from shared.queue import HEADER_ATTEMPT, HEADER_CORRELATION_ID, HEADER_MESSAGE_ID, QueueProducer
from shared.tracing import decode_headers

logger = logging.getLogger(__name__)


def to_record(msg) -> QueueRecord:
    headers = decode_headers(msg.headers)
    try:
        attempt = int(headers.get(HEADER_ATTEMPT, "1"))
    except ValueError:
        attempt = 1
    return QueueRecord(
        message_id=headers.get(HEADER_MESSAGE_ID) or f"{msg.topic}:{msg.partition}:{msg.offset}",
        body=msg.value or b"",
        attempt=attempt,
        correlation_id=headers.get(HEADER_CORRELATION_ID),
        key=msg.key,
        headers=headers,
        topic=msg.topic,
        partition=msg.partition,
        offset=msg.offset,
    )


async def _settle_failure(
    failure: MessageFailure, queue: QueueProducer, *, max_attempts: int, dead_letter_topic: str
) -> None:
    record = failure.record
    key = record.key.decode() if record.key else None
    if failure.permanent or record.attempt >= max_attempts:
        await queue.send_raw(
            record.body,
            key=key,
            message_id=record.message_id,
            attempt=record.attempt,
            correlation_id=record.correlation_id,
            topic=dead_letter_topic,
        )
        MESSAGES_CONSUMED.labels("dead_lettered").inc()
        logger.error(
            "Message sent to DLQ",
            extra={
                "message_id": record.message_id,
                "attempt": record.attempt,
                "permanent": failure.permanent,
                "error": str(failure.error),
            },
        )
    else:
        await queue.send_raw(
            record.body,
            key=key,
            message_id=record.message_id,
            attempt=record.attempt + 1,
            correlation_id=record.correlation_id,
        )
        MESSAGES_CONSUMED.labels("redelivered").inc()
        logger.warning(
            "Message re-enqueued for redelivery",
            extra={"message_id": record.message_id, "next_attempt": record.attempt + 1},
        )


async def settle_batch(
    records: list[QueueRecord],
    dispatcher: MessageDispatcher,
    queue: QueueProducer,
    *,
    max_attempts: int,
    dead_letter_topic: str,
) -> BatchResult:
    """Process a batch, then redeliver or dead-letter each failed message."""
    BATCH_SIZE.observe(len(records))
    result = await process_batch(records, dispatcher)

    MESSAGES_CONSUMED.labels("processed").inc(len(result.processed))
    MESSAGES_CONSUMED.labels("ignored").inc(len(result.ignored))

    for failure in result.failures:
        try:
            await _settle_failure(
                failure, queue, max_attempts=max_attempts, dead_letter_topic=dead_letter_topic
            )
        except PublishFailure as exc:
            MESSAGES_CONSUMED.labels("unsettled").inc()
            logger.error(
                "Could not re-enqueue or dead-letter message",
                extra={"message_id": failure.record.message_id, "error": exc.message},
            )
            result.unsettled.append(failure.record)
    return result


def commit_positions(
    polled: dict[TopicPartition, list], unsettled: list[QueueRecord]
) -> dict[TopicPartition, int]:
    """Next offset to commit per partition: past the batch, or back at its first unsettled record."""
    positions = {tp: messages[-1].offset + 1 for tp, messages in polled.items() if messages}
    for record in unsettled:
        if record.offset is None:
            continue
        tp = TopicPartition(record.topic, record.partition)
        positions[tp] = min(positions.get(tp, record.offset), record.offset)
    return positions


async def run_consumer(
    consumer: AIOKafkaConsumer,
    dispatcher: MessageDispatcher,
    queue: QueueProducer,
    *,
    batch_size: int,
    poll_timeout_ms: int,
    max_attempts: int,
    dead_letter_topic: str,
) -> None:
    """Main consumer loop, runs until cancelled."""
    while True:
        polled = await consumer.getmany(timeout_ms=poll_timeout_ms, max_records=batch_size)
        records = [to_record(msg) for messages in polled.values() for msg in messages]
        if not records:
            continue

        logger.info("Processing queue batch", extra={"message_count": len(records)})
        result = await settle_batch(
            records,
            dispatcher,
            queue,
            max_attempts=max_attempts,
            dead_letter_topic=dead_letter_topic,
        )
        positions = commit_positions(polled, result.unsettled)
        await consumer.commit(positions)
        if result.unsettled:
            for tp in {TopicPartition(r.topic, r.partition) for r in result.unsettled if r.offset is not None}:
                consumer.seek(tp, positions[tp])
            logger.warning(
                "Batch partly unsettled, rewinding for redelivery",
                extra={"unsettled": [r.message_id for r in result.unsettled]},
            )
