"""
Queue worker entry point.
Starts the AIOKafka consumer + producer and the database engine, then runs the batch loop.
"""

import asyncio
import logging

import prometheus_client
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from app.database import create_engine, create_sessionmaker
from app.repositories.order_repository import SqlOrderRepository
from app.services.event_publisher import KafkaEventPublisher
from app.services.order_service import OrderService
from app.utils.logging import setup_logging
from queue_worker.batch import MessageDispatcher
from queue_worker.config import settings
from queue_worker.consumer import run_consumer
from queue_worker.handlers import build_handlers
from queue_worker.mailer import LoggingEmailSender
from shared.queue import QueueProducer
from shared.tracing import setup_tracing

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


async def main() -> None:
    prometheus_client.start_http_server(settings.metrics_port)
    setup_tracing("queue-worker", settings.otlp_endpoint, enabled=settings.tracing_enabled)

    engine = create_engine(settings.database_url)
    consumer = AIOKafkaConsumer(
        settings.queue_topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )

    await producer.start()
    await consumer.start()

    order_service = OrderService.from_settings(
        settings,
        SqlOrderRepository(create_sessionmaker(engine)),
        KafkaEventPublisher(producer, settings.events_topic, settings.publish_retry_policy()),
    )
    dispatcher = MessageDispatcher(build_handlers(order_service, LoggingEmailSender()))
    queue = QueueProducer(producer, settings.queue_topic, settings.publish_retry_policy())

    logger.info(
        "Queue worker started",
        extra={
            "bootstrap_servers": settings.kafka_bootstrap_servers,
            "consumer_group": settings.kafka_consumer_group,
            "metrics_port": settings.metrics_port,
        },
    )

    try:
        await run_consumer(
            consumer,
            dispatcher,
            queue,
            batch_size=settings.queue_batch_size,
            poll_timeout_ms=settings.queue_poll_timeout_ms,
            max_attempts=settings.queue_max_delivery_attempts,
            dead_letter_topic=settings.dead_letter_topic,
        )
    finally:
        await consumer.stop()
        await producer.stop()
        await engine.dispose()
        logger.info("Queue worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
