"""
Event listener consumer. Reads domain events from the bus and dispatches them by
``event_type``. Unknown or undecodable events are logged and skipped, and a failing
handler is logged and reported without stopping the loop.
"""

import json
import logging
from typing import Mapping

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError

from app.utils.logging import correlation_context
from event_listener.handlers import EventHandler
from event_listener.metrics import EVENTS_HANDLED
from shared.errors import OrderError
from shared.events import parse_event
from shared.tracing import decode_headers, incoming_context

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

HANDLED = "handled"
SKIPPED = "skipped"
PARSE_ERROR = "parse_error"
FAILED = "failed"


async def run_consumer(consumer: AIOKafkaConsumer, routes: Mapping[str, EventHandler]) -> None:
    """Main consumer loop, runs until cancelled."""
    async for msg in consumer:
        headers = decode_headers(msg.headers)
        with tracer.start_as_current_span("kafka.consume.orders.events", context=incoming_context(headers)):
            await handle_event(msg.value, routes)


async def handle_event(payload: bytes, routes: Mapping[str, EventHandler]) -> str:
    try:
        document = json.loads(payload)
    except (ValueError, TypeError) as exc:
        logger.error("Failed to decode event", extra={"error": str(exc)})
        EVENTS_HANDLED.labels("unknown", PARSE_ERROR).inc()
        return PARSE_ERROR

    event_type = document.get("event_type") if isinstance(document, dict) else None
    if not isinstance(event_type, str):
        logger.error("Event has no usable event_type", extra={"event_type": repr(event_type)})
        EVENTS_HANDLED.labels("unknown", PARSE_ERROR).inc()
        return PARSE_ERROR

    handler = routes.get(event_type)
    if handler is None:
        logger.warning("Unknown event type, skipping", extra={"event_type": event_type})
        EVENTS_HANDLED.labels(event_type, SKIPPED).inc()
        return SKIPPED

    try:
        event = parse_event(payload)
    except PydanticValidationError as exc:
        logger.error(
            "Failed to parse %s event",
            event_type,
            extra={"error_count": exc.error_count(), "error": str(exc)},
        )
        EVENTS_HANDLED.labels(event_type, PARSE_ERROR).inc()
        return PARSE_ERROR

    with correlation_context(event.correlation_id):
        try:
            await handler(event)
        except OrderError as exc:
            logger.error(
                "Failed to handle %s event",
                event_type,
                extra={"order_id": event.order_id, "error_code": exc.code, "error": exc.message},
            )
            EVENTS_HANDLED.labels(event_type, FAILED).inc()
            return FAILED
        except Exception:
            logger.exception(
                "Unexpected error handling %s event", event_type, extra={"order_id": event.order_id}
            )
            EVENTS_HANDLED.labels(event_type, FAILED).inc()
            return FAILED

    EVENTS_HANDLED.labels(event_type, HANDLED).inc()
    return HANDLED
