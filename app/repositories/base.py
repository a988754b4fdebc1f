"""
Repository contract for keyed entities with optimistic locking.

Implementations raise the shared error taxonomy: NotFound, AlreadyExists,
VersionConflict, StoreUnavailable (transient) and StoreRejected (permanent).
"""

import base64
import binascii
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from shared.errors import ValidationFailure
from shared.validation import FieldViolation

T = TypeVar("T")
ID = TypeVar("ID")
F = TypeVar("F")


@dataclass(frozen=True)
class PageRequest:
    limit: int
    token: str | None = None


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    next_token: str | None = None


def encode_page_token(cursor: dict[str, Any]) -> str:
    raw = json.dumps(cursor, separators=(",", ":"), sort_keys=True).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_page_token(token: str) -> dict[str, Any]:
    try:
        padded = token + "=" * (-len(token) % 4)
        cursor = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError) as exc:
        raise ValidationFailure(
            [FieldViolation("nextToken", "Malformed pagination token", "INVALID_TOKEN")]
        ) from exc
    if not isinstance(cursor, dict):
        raise ValidationFailure(
            [FieldViolation("nextToken", "Malformed pagination token", "INVALID_TOKEN")]
        )
    return cursor


class Repository(ABC, Generic[T, ID, F]):
    """Create/read/update/delete/list over a keyed entity store."""

    @abstractmethod
    async def find_by_id(self, entity_id: ID) -> T | None:
        """Return the entity, or None when it does not exist."""

    @abstractmethod
    async def save(self, entity: T) -> T:
        """Insert a new entity. Raises AlreadyExists if the identifier is taken."""

    @abstractmethod
    async def update_with_version(
        self, entity_id: ID, expected_version: int, mutator: Callable[[T], T]
    ) -> T:
        """
        Apply ``mutator`` to the stored entity and write it back as version
        ``expected_version + 1``, only if the stored version still equals
        ``expected_version`` at write time. The check and the write are one
        conditional statement at the store.

        Raises NotFound if the entity does not exist and VersionConflict if the
        stored version differs. Errors raised by ``mutator`` propagate unchanged.
        """

    @abstractmethod
    async def delete(self, entity_id: ID) -> bool:
        """Remove the entity. Missing ids are not an error; returns whether a row was removed."""

    @abstractmethod
    async def query(self, criteria: F, page: PageRequest) -> Page[T]:
        """Return one page of entities matching ``criteria`` plus the token for the next page."""
