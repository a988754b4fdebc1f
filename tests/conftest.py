import os

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio  # noqa: E402
from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from pydantic import BaseModel  # noqa: E402

from app.config import Settings  # noqa: E402
from app.main import create_app  # noqa: E402
from app.repositories.base import Page, PageRequest, Repository, decode_page_token, encode_page_token  # noqa: E402
from app.schemas.order import OrderCreate  # noqa: E402
from app.services.event_publisher import EventPublisher  # noqa: E402
from app.services.order_service import OrderService  # noqa: E402
from shared.errors import AlreadyExists, NotFound, PublishFailure, VersionConflict  # noqa: E402
from shared.retry import RetryPolicy  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class InMemoryOrderRepository(Repository):
    """
    Dict-backed repository honouring the conditional-write contract. The version is
    re-checked right before the write with no await in between, while an await
    between read and write lets concurrent writers interleave.
    """

    def __init__(self):
        self.orders = {}
        self.update_calls = 0

    async def find_by_id(self, order_id):
        return self.orders.get(order_id)

    async def save(self, order):
        if order.order_id in self.orders:
            raise AlreadyExists()
        self.orders[order.order_id] = order
        return order

    async def update_with_version(self, order_id, expected_version, mutator):
        self.update_calls += 1
        current = self.orders.get(order_id)
        if current is None:
            raise NotFound()
        if current.version != expected_version:
            raise VersionConflict()
        updated = mutator(current).model_copy(
            update={"version": expected_version + 1, "updated_at": datetime.now(timezone.utc)}
        )
        await asyncio.sleep(0)
        stored = self.orders.get(order_id)
        if stored is None or stored.version != expected_version:
            raise VersionConflict()
        self.orders[order_id] = updated
        return updated

    async def delete(self, order_id):
        return self.orders.pop(order_id, None) is not None

    async def query(self, criteria, page: PageRequest):
        matches = sorted(
            (
                o
                for o in self.orders.values()
                if (criteria.customer_id is None or o.customer_id == criteria.customer_id)
                and (criteria.status is None or o.status == criteria.status)
            ),
            key=lambda o: (o.created_at, o.order_id),
        )
        offset = decode_page_token(page.token)["offset"] if page.token else 0
        items = matches[offset : offset + page.limit]
        more = offset + page.limit < len(matches)
        return Page(items=items, next_token=encode_page_token({"offset": offset + page.limit}) if more else None)


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []
        self.fail = False

    async def publish(self, event):
        if self.fail:
            raise PublishFailure()
        self.events.append(event)

    def types(self):
        return [e.event_type for e in self.events]


class RecordingQueue:
    """Stands in for shared.queue.QueueProducer."""

    def __init__(self):
        self.sent = []
        self.raw = []
        self.fail = False
        # message ids whose redelivery or dead-lettering is refused
        self.refuse_raw = set()

    async def send(self, message_type, data, *, correlation_id, key=None):
        if self.fail:
            raise PublishFailure()
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
        self.sent.append(
            {
                "type": str(getattr(message_type, "value", message_type)),
                "data": data,
                "correlation_id": correlation_id,
                "key": key,
            }
        )
        return f"msg-{len(self.sent)}"

    async def send_raw(self, value, *, key, message_id, attempt, correlation_id, topic=None):
        if message_id in self.refuse_raw:
            raise PublishFailure("broker unavailable")
        self.raw.append(
            {
                "value": value,
                "key": key,
                "message_id": message_id,
                "attempt": attempt,
                "correlation_id": correlation_id,
                "topic": topic,
            }
        )


async def no_sleep(_delay):
    return None


def make_service(repository, publisher, conflict_attempts=3) -> OrderService:
    return OrderService(
        repository,
        publisher,
        store_policy=RetryPolicy(max_attempts=3, base_delay=0.05, max_delay=1.0),
        conflict_policy=RetryPolicy(
            max_attempts=conflict_attempts, base_delay=0.05, max_delay=1.0, retryable=lambda exc: False
        ),
        sleep=no_sleep,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def order_payload():
    return {
        "customerId": "customer-123",
        "customerEmail": "test@example.com",
        "items": [{"productId": "p1", "name": "Widget", "quantity": 2, "price": 10.00}],
        "shippingAddress": {
            "street": "123 Main St",
            "city": "Boston",
            "state": "MA",
            "zipCode": "02101",
        },
    }


@pytest.fixture()
def order_request(order_payload):
    return OrderCreate.model_validate(order_payload)


@pytest.fixture()
def repository():
    return InMemoryOrderRepository()


@pytest.fixture()
def publisher():
    return RecordingPublisher()


@pytest.fixture()
def service(repository, publisher):
    return make_service(repository, publisher)


@pytest.fixture()
def settings():
    return Settings(tracing_enabled=False)


@pytest.fixture()
def client(settings, service):
    app = create_app(settings, with_lifespan=False)
    app.state.order_service = service
    return TestClient(app)


@pytest.fixture()
def service_factory(repository, publisher):
    def factory(conflict_attempts=3, repo=None):
        return make_service(repo or repository, publisher, conflict_attempts=conflict_attempts)

    return factory


@pytest.fixture()
def queue():
    return RecordingQueue()
