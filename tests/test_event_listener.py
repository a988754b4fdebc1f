import pytest

from app.utils.logging import get_correlation_id
from event_listener.consumer import FAILED, HANDLED, PARSE_ERROR, SKIPPED, handle_event
from event_listener.handlers import OrderEventHandlers
from shared.events import (
    OrderCreatedEvent,
    OrderDeletedEvent,
    OrderUpdatedEvent,
    PaymentProcessedEvent,
    parse_event,
)


def created_event(**overrides):
    fields = dict(
        correlation_id="cid-1",
        order_id="o-1",
        customer_id="customer-123",
        customer_email="test@example.com",
        status="PENDING",
        total_amount=20.0,
        item_count=1,
        version=1,
    )
    fields.update(overrides)
    return OrderCreatedEvent(**fields)


def updated_event(previous, status, changed=("status",)):
    return OrderUpdatedEvent(
        correlation_id="cid-2",
        order_id="o-1",
        customer_id="customer-123",
        customer_email="test@example.com",
        previous_status=previous,
        status=status,
        changed_fields=list(changed),
        version=3,
    )


def payload(event) -> bytes:
    return event.model_dump_json().encode()


@pytest.fixture()
def routes(queue):
    return OrderEventHandlers(queue).routes()


class TestEventRoundTrip:
    def test_parse_picks_the_variant_by_type(self):
        event = parse_event(payload(created_event()))

        assert isinstance(event, OrderCreatedEvent)
        assert event.total_amount == 20.0

    def test_deleted_event(self):
        event = parse_event(payload(OrderDeletedEvent(correlation_id="c", order_id="o-1")))

        assert isinstance(event, OrderDeletedEvent)


class TestHandleEvent:
    async def test_order_created_enqueues_payment_and_confirmation(self, routes, queue):
        outcome = await handle_event(payload(created_event()), routes)

        assert outcome == HANDLED
        assert [m["type"] for m in queue.sent] == ["PROCESS_ORDER", "SEND_EMAIL"]
        process, email = queue.sent
        assert process["data"] == {"orderId": "o-1", "amount": 20.0}
        assert process["key"] == "o-1"
        assert email["data"]["to"] == "test@example.com"
        assert all(m["correlation_id"] == "cid-1" for m in queue.sent)

    @pytest.mark.parametrize("status", ["SHIPPED", "DELIVERED", "CANCELLED"])
    async def test_customer_hears_about_notable_status_changes(self, routes, queue, status):
        outcome = await handle_event(payload(updated_event("CONFIRMED", status)), routes)

        assert outcome == HANDLED
        [email] = queue.sent
        assert email["type"] == "SEND_EMAIL"
        assert status.lower() in email["data"]["subject"]

    async def test_other_updates_are_quiet(self, routes, queue):
        await handle_event(payload(updated_event("PENDING", "CONFIRMED")), routes)
        await handle_event(payload(updated_event("PENDING", "PENDING", changed=("items",))), routes)

        assert queue.sent == []

    async def test_order_deleted_is_acknowledged(self, routes, queue):
        outcome = await handle_event(payload(OrderDeletedEvent(correlation_id="c", order_id="o-1")), routes)

        assert outcome == HANDLED
        assert queue.sent == []

    async def test_payment_processed_sends_receipt(self, routes, queue):
        event = PaymentProcessedEvent(
            correlation_id="cid-3",
            order_id="o-1",
            customer_email="test@example.com",
            payment_id="pay-1",
            amount=20.0,
            status="CONFIRMED",
            version=2,
        )

        await handle_event(payload(event), routes)

        [email] = queue.sent
        assert "pay-1" in email["data"]["body"]

    async def test_handler_runs_under_the_event_correlation_id(self, queue):
        seen = []

        async def handler(event):
            seen.append(get_correlation_id())

        await handle_event(payload(created_event(correlation_id="cid-77")), {"ORDER_CREATED": handler})

        assert seen == ["cid-77"]
        assert get_correlation_id() is None

    async def test_unknown_type_is_skipped(self, routes, queue):
        outcome = await handle_event(b'{"event_type": "ORDER_ARCHIVED", "order_id": "o-1"}', routes)

        assert outcome == SKIPPED
        assert queue.sent == []

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[1, 2]",
            b'"text"',
            b'{"order_id": "o-1"}',
            b'{"event_type": ["ORDER_CREATED"], "order_id": "o-1"}',
            b'{"event_type": {"name": "ORDER_CREATED"}}',
            b'{"event_type": 7}',
        ],
    )
    async def test_undecodable_payload(self, routes, queue, raw):
        assert await handle_event(raw, routes) == PARSE_ERROR
        assert queue.sent == []

    async def test_known_type_with_missing_fields(self, routes, queue):
        outcome = await handle_event(b'{"event_type": "ORDER_CREATED", "order_id": "o-1"}', routes)

        assert outcome == PARSE_ERROR
        assert queue.sent == []

    async def test_enqueue_failure_is_reported(self, routes, queue):
        queue.fail = True

        assert await handle_event(payload(created_event()), routes) == FAILED

    async def test_handler_rejecting_the_event_data_is_reported(self, routes, queue):
        outcome = await handle_event(payload(created_event(customer_email="not-an-email")), routes)

        assert outcome == FAILED
        assert [m["type"] for m in queue.sent] == ["PROCESS_ORDER"]

    async def test_unexpected_handler_error_does_not_escape(self, routes, queue):
        async def broken(event):
            raise RuntimeError("template missing")

        outcome = await handle_event(payload(created_event()), {"ORDER_CREATED": broken})
        assert outcome == FAILED

        # The next event is still handled.
        assert await handle_event(payload(created_event()), routes) == HANDLED
        assert get_correlation_id() is None
