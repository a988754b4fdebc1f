import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.order import OrderRecord, OrderStatus
from app.repositories.base import (
    Page,
    PageRequest,
    Repository,
    decode_page_token,
    encode_page_token,
)
from app.schemas.order import Order
from shared.errors import (
    AlreadyExists,
    NotFound,
    OrderError,
    StoreRejected,
    StoreUnavailable,
    ValidationFailure,
    VersionConflict,
)
from shared.validation import FieldViolation

logger = logging.getLogger(__name__)

_TRANSIENT = (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError, OSError)


@dataclass(frozen=True)
class OrderFilter:
    customer_id: str | None = None
    status: OrderStatus | None = None


def translate_store_error(exc: Exception) -> OrderError:
    """Map a driver / SQLAlchemy failure onto the transient-vs-permanent taxonomy."""
    if isinstance(exc, _TRANSIENT) or (
        isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated
    ):
        return StoreUnavailable()
    return StoreRejected()


# ---------------------------------------------------------------------------
# Record <-> entity mapping
# ---------------------------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_entity(record: OrderRecord) -> Order:
    return Order(
        order_id=record.order_id,
        customer_id=record.customer_id,
        customer_email=record.customer_email,
        items=record.items,
        shipping_address=record.shipping_address,
        status=record.status,
        version=record.version,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


def _mutable_columns(order: Order) -> dict:
    return {
        "customer_email": order.customer_email,
        "items": [item.model_dump(mode="json", by_alias=True) for item in order.items],
        "shipping_address": order.shipping_address.model_dump(mode="json", by_alias=True),
        "status": order.status,
        "version": order.version,
        "updated_at": order.updated_at,
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlOrderRepository(Repository[Order, str, OrderFilter]):
    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except OrderError:
            raise
        except (sa_exc.SQLAlchemyError, OSError) as exc:
            error = translate_store_error(exc)
            logger.warning(
                "Store %s failed",
                operation,
                extra={"error": str(exc), "error_code": error.code},
            )
            raise error from exc

    async def find_by_id(self, order_id: str) -> Order | None:
        async with self._session("find_by_id") as session:
            record = await session.get(OrderRecord, order_id)
            return _to_entity(record) if record is not None else None

    async def save(self, order: Order) -> Order:
        async with self._session("save") as session:
            session.add(
                OrderRecord(
                    order_id=order.order_id,
                    customer_id=order.customer_id,
                    created_at=order.created_at,
                    **_mutable_columns(order),
                )
            )
            try:
                await session.commit()
            except sa_exc.IntegrityError as exc:
                await session.rollback()
                raise AlreadyExists(f"Order {order.order_id} already exists") from exc
        return order

    async def update_with_version(
        self,
        order_id: str,
        expected_version: int,
        mutator: Callable[[Order], Order],
    ) -> Order:
        async with self._session("update_with_version") as session:
            record = await session.get(OrderRecord, order_id)
            if record is None:
                raise NotFound(f"Order {order_id} not found")
            current = _to_entity(record)
            if current.version != expected_version:
                raise VersionConflict(
                    details={"expectedVersion": expected_version, "currentVersion": current.version}
                )

            updated = mutator(current).model_copy(
                update={
                    "version": expected_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )

            # Conditional write: the version predicate and the update are one statement.
            result = await session.execute(
                update(OrderRecord)
                .where(
                    OrderRecord.order_id == order_id,
                    OrderRecord.version == expected_version,
                )
                .values(**_mutable_columns(updated))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise VersionConflict(details={"expectedVersion": expected_version})
            await session.commit()
        return updated

    async def delete(self, order_id: str) -> bool:
        async with self._session("delete") as session:
            result = await session.execute(
                delete(OrderRecord).where(OrderRecord.order_id == order_id)
            )
            removed = result.rowcount > 0
            await session.commit()
        return removed

    async def query(self, criteria: OrderFilter, page: PageRequest) -> Page[Order]:
        stmt = select(OrderRecord)
        if criteria.customer_id is not None:
            stmt = stmt.where(OrderRecord.customer_id == criteria.customer_id)
        if criteria.status is not None:
            stmt = stmt.where(OrderRecord.status == criteria.status)
        if page.token:
            created_at, order_id = _cursor_position(decode_page_token(page.token))
            stmt = stmt.where(
                or_(
                    OrderRecord.created_at > created_at,
                    and_(OrderRecord.created_at == created_at, OrderRecord.order_id > order_id),
                )
            )
        stmt = stmt.order_by(OrderRecord.created_at, OrderRecord.order_id).limit(page.limit + 1)

        async with self._session("query") as session:
            records = (await session.execute(stmt)).scalars().all()

        items = [_to_entity(record) for record in records[: page.limit]]
        next_token = None
        if len(records) > page.limit:
            last = records[page.limit - 1]
            next_token = encode_page_token(
                {"createdAt": last.created_at.isoformat(), "orderId": last.order_id}
            )
        return Page(items=items, next_token=next_token)


def _cursor_position(cursor: dict) -> tuple[datetime, str]:
    try:
        return datetime.fromisoformat(cursor["createdAt"]), str(cursor["orderId"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationFailure(
            [FieldViolation("nextToken", "Malformed pagination token", "INVALID_TOKEN")]
        ) from exc
