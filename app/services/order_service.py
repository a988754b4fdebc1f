import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from app.config import Settings
from app.metrics import PUBLISH_FAILURES, STORE_RETRIES, VERSION_CONFLICTS
from app.models.order import OrderStatus, can_transition
from app.repositories.base import Page, PageRequest, Repository
from app.repositories.order_repository import OrderFilter
from app.schemas.order import ListOrdersQuery, Order, OrderCreate, OrderUpdate
from app.services.event_publisher import EventPublisher
from shared.errors import InvalidTransition, NotFound, VersionConflict
from shared.events import (
    DomainEvent,
    OrderCreatedEvent,
    OrderDeletedEvent,
    OrderUpdatedEvent,
    PaymentProcessedEvent,
)
from shared.retry import RetryPolicy, retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EDITABLE_WHILE_PENDING = ("items", "shipping_address")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class _AlreadyApplied(Exception):
    """Raised by a mutator when the stored order needs no write."""

    def __init__(self, current: Order):
        self.current = current


# ---------------------------------------------------------------------------
# Domain rules
# ---------------------------------------------------------------------------


def apply_changes(current: Order, changes: dict) -> Order:
    target = changes.get("status")
    if target is not None and not can_transition(current.status, target):
        raise InvalidTransition(
            f"Cannot transition order from {current.status.value} to {target.value}",
            details={"from": current.status.value, "to": target.value},
        )
    if current.status != OrderStatus.PENDING and any(f in changes for f in _EDITABLE_WHILE_PENDING):
        raise InvalidTransition(
            "Items and shipping address can only be changed while the order is PENDING",
            details={"status": current.status.value},
        )
    return current.model_copy(update=changes)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OrderService:
    """
    Order use cases on top of a versioned repository.

    Store calls are retried on transient failures; conditional-write conflicts go
    through a separate bounded loop. Events are published after the write commits
    and a publish failure never fails the operation.
    """

    def __init__(
        self,
        repository: Repository,
        publisher: EventPublisher,
        *,
        store_policy: RetryPolicy,
        conflict_policy: RetryPolicy,
        default_page_size: int = 20,
        max_page_size: int = 100,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self._publisher = publisher
        self._store_policy = store_policy
        self._conflict_policy = conflict_policy
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls, config: Settings, repository: Repository, publisher: EventPublisher
    ) -> "OrderService":
        return cls(
            repository,
            publisher,
            store_policy=config.store_retry_policy(),
            conflict_policy=config.version_conflict_policy(),
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )

    # -- helpers -------------------------------------------------------------

    async def _store(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await retry(
            operation,
            self._store_policy,
            description=name,
            sleep=self._sleep,
            on_retry=lambda attempt, exc: STORE_RETRIES.labels(name).inc(),
        )

    async def _publish(self, event: DomainEvent) -> None:
        try:
            await self._publisher.publish(event)
        except Exception as exc:
            # The write is committed; a lost event is reported, not rolled back.
            PUBLISH_FAILURES.labels(event.event_type).inc()
            logger.error(
                "Failed to publish %s event",
                event.event_type,
                extra={"order_id": event.order_id, "error": str(exc)},
            )

    async def _mutate(
        self,
        order_id: str,
        mutator: Callable[[Order], Order],
        expected_version: int | None,
    ) -> tuple[Order, Order]:
        """
        Optimistic-locking loop. Returns (before, after).

        With ``expected_version`` every attempt is pinned to the caller's version;
        without it each attempt re-reads the latest version and re-applies ``mutator``.
        Gives up with VersionConflict after the conflict policy's attempt bound.
        """
        max_attempts = self._conflict_policy.max_attempts
        seen: list[Order] = []

        def recording_mutator(current: Order) -> Order:
            seen.append(current)
            return mutator(current)

        for attempt in range(1, max_attempts + 1):
            version = expected_version
            if version is None:
                version = (await self.get_order(order_id)).version
            try:
                after = await self._store(
                    lambda: self._repository.update_with_version(order_id, version, recording_mutator),
                    "update_with_version",
                )
                return seen[-1], after
            except VersionConflict:
                VERSION_CONFLICTS.inc()
                logger.warning(
                    "Version conflict on attempt %d/%d",
                    attempt,
                    max_attempts,
                    extra={"order_id": order_id, "expected_version": version, "attempt": attempt},
                )
                if attempt < max_attempts:
                    await self._sleep(self._conflict_policy.delay_for(attempt))

        raise VersionConflict(
            f"Order {order_id} was modified concurrently; reload it and retry",
            details={"expectedVersion": expected_version, "attempts": max_attempts},
        )

    # -- commands ------------------------------------------------------------

    async def create_order(self, request: OrderCreate, correlation_id: str) -> Order:
        now = self._clock()
        order = Order(
            order_id=str(uuid.uuid4()),
            customer_id=request.customer_id,
            customer_email=str(request.customer_email),
            items=request.items,
            shipping_address=request.shipping_address,
            status=OrderStatus.PENDING,
            version=1,
            created_at=now,
            updated_at=now,
        )
        await self._store(lambda: self._repository.save(order), "save")

        logger.info(
            "Order persisted, publishing ORDER_CREATED",
            extra={
                "order_id": order.order_id,
                "customer_id": order.customer_id,
                "amount": order.total_amount,
                "item_count": len(order.items),
            },
        )
        await self._publish(
            OrderCreatedEvent(
                correlation_id=correlation_id,
                order_id=order.order_id,
                customer_id=order.customer_id,
                customer_email=order.customer_email,
                status=order.status.value,
                total_amount=order.total_amount,
                item_count=len(order.items),
                version=order.version,
            )
        )
        return order

    async def update_order(
        self,
        order_id: str,
        patch: OrderUpdate,
        expected_version: int | None = None,
        *,
        correlation_id: str,
    ) -> Order:
        changes = patch.changes()
        before, after = await self._mutate(
            order_id, lambda current: apply_changes(current, changes), expected_version
        )

        logger.info(
            "Order updated",
            extra={"order_id": order_id, "version": after.version, "fields": sorted(changes)},
        )
        await self._publish(
            OrderUpdatedEvent(
                correlation_id=correlation_id,
                order_id=order_id,
                customer_id=after.customer_id,
                customer_email=after.customer_email,
                previous_status=before.status.value,
                status=after.status.value,
                changed_fields=[_camel(name) for name in sorted(changes)],
                version=after.version,
            )
        )
        return after

    async def delete_order(self, order_id: str, correlation_id: str) -> None:
        removed = await self._store(lambda: self._repository.delete(order_id), "delete")
        if not removed:
            logger.info("Order already absent, nothing to delete", extra={"order_id": order_id})
            return

        logger.info("Order deleted", extra={"order_id": order_id})
        await self._publish(OrderDeletedEvent(correlation_id=correlation_id, order_id=order_id))

    async def process_payment(
        self,
        order_id: str,
        *,
        correlation_id: str,
        payment_id: str | None = None,
        amount: float | None = None,
    ) -> Order:
        """
        Confirm a PENDING order once its payment went through.

        Safe to repeat: an order already past PENDING is returned untouched and no
        event is published.
        """

        def confirm(current: Order) -> Order:
            if current.status != OrderStatus.PENDING:
                raise _AlreadyApplied(current)
            return apply_changes(current, {"status": OrderStatus.CONFIRMED})

        try:
            _, after = await self._mutate(order_id, confirm, expected_version=None)
        except _AlreadyApplied as exc:
            logger.info(
                "Order already %s, skipping payment processing",
                exc.current.status.value,
                extra={"order_id": order_id},
            )
            return exc.current

        payment_id = payment_id or f"pay-{uuid.uuid4()}"
        amount = after.total_amount if amount is None else amount
        logger.info(
            "Payment processed, order confirmed",
            extra={"order_id": order_id, "payment_id": payment_id, "amount": amount},
        )
        await self._publish(
            PaymentProcessedEvent(
                correlation_id=correlation_id,
                order_id=order_id,
                customer_email=after.customer_email,
                payment_id=payment_id,
                amount=amount,
                status=after.status.value,
                version=after.version,
            )
        )
        return after

    # -- queries -------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        order = await self._store(lambda: self._repository.find_by_id(order_id), "find_by_id")
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    async def list_orders(self, query: ListOrdersQuery) -> Page[Order]:
        limit = min(query.limit or self._default_page_size, self._max_page_size)
        criteria = OrderFilter(customer_id=query.customer_id, status=query.status)
        return await self._store(
            lambda: self._repository.query(criteria, PageRequest(limit=limit, token=query.next_token)),
            "query",
        )
