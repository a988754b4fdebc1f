"""
Event listener entry point.
Starts the AIOKafka consumer on the order events topic and a producer for the work queue.
"""

import asyncio
import logging

import prometheus_client
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from app.utils.logging import setup_logging
from event_listener.config import settings
from event_listener.consumer import run_consumer
from event_listener.handlers import OrderEventHandlers
from shared.queue import QueueProducer
from shared.retry import RetryPolicy
from shared.tracing import setup_tracing

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


async def main() -> None:
    prometheus_client.start_http_server(settings.metrics_port)
    setup_tracing("event-listener", settings.otlp_endpoint, enabled=settings.tracing_enabled)

    consumer = AIOKafkaConsumer(
        settings.events_topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        enable_auto_commit=True,
        auto_offset_reset="earliest",
    )
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    queue = QueueProducer(
        producer,
        settings.queue_topic,
        RetryPolicy(
            max_attempts=settings.publish_retry_max_attempts,
            base_delay=settings.publish_retry_base_delay,
            max_delay=settings.publish_retry_max_delay,
        ),
    )

    await producer.start()
    await consumer.start()
    logger.info(
        "Event listener started",
        extra={
            "bootstrap_servers": settings.kafka_bootstrap_servers,
            "consumer_group": settings.kafka_consumer_group,
            "metrics_port": settings.metrics_port,
        },
    )

    try:
        await run_consumer(consumer, OrderEventHandlers(queue).routes())
    finally:
        await consumer.stop()
        await producer.stop()
        logger.info("Event listener stopped")


if __name__ == "__main__":
    asyncio.run(main())
