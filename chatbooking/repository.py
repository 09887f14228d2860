"""Storage-agnostic repositories.

Components read and write records only through ``Repository``; the
in-memory implementation is what tests and single-process deployments use.
``insert_if_absent`` is the one conditional write, used wherever two
concurrent requests could otherwise both create the same record.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel

from chatbooking.flows.schema import FlowGraph
from chatbooking.models import (
    AccountSettings,
    Contact,
    Conversation,
    MessageRecord,
    Reservation,
    ReviewRequest,
)

T = TypeVar("T", bound=BaseModel)


def _by_id(value: Any) -> str:
    return value.id


class Repository(ABC, Generic[T]):
    """Key/value access to one record type.

    Backends raise ``PersistenceError`` when a write does not go through.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[T]:
        """Return the record stored under *key*, or None."""

    @abstractmethod
    async def upsert(self, value: T) -> T:
        """Insert or replace *value*."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove *key*.  Returns True if it existed."""

    @abstractmethod
    async def insert_if_absent(self, value: T, key: str | None = None) -> tuple[T, bool]:
        """Atomically store *value* unless *key* is taken.

        Returns the stored record and whether this call inserted it.  When
        the key already exists the existing record is returned untouched.
        """

    @abstractmethod
    async def list(self, **filters: Any) -> list[T]:
        """Records whose attributes equal every given filter, in insertion order."""


class InMemoryRepository(Repository[T]):
    """Dict-backed repository.  Stores and returns copies, never shared objects."""

    def __init__(self, key: Callable[[T], str] = _by_id) -> None:
        self._key = key
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[T]:
        with self._lock:
            value = self._items.get(key)
            return value.model_copy(deep=True) if value is not None else None

    async def upsert(self, value: T) -> T:
        with self._lock:
            self._items[self._key(value)] = value.model_copy(deep=True)
        return value

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    async def insert_if_absent(self, value: T, key: str | None = None) -> tuple[T, bool]:
        key = key or self._key(value)
        with self._lock:
            existing = self._items.get(key)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._items[key] = value.model_copy(deep=True)
            return value, True

    async def list(self, **filters: Any) -> list[T]:
        with self._lock:
            values = list(self._items.values())
        return [
            v.model_copy(deep=True)
            for v in values
            if all(getattr(v, name, None) == expected for name, expected in filters.items())
        ]

    def __len__(self) -> int:
        return len(self._items)


def contact_key(account_id: str, sender_id: str) -> str:
    return f"{account_id}:{sender_id}"


@dataclass
class Store:
    """All repositories the booking components use, grouped for injection."""

    flows: Repository[FlowGraph] = field(default_factory=InMemoryRepository)
    conversations: Repository[Conversation] = field(default_factory=InMemoryRepository)
    messages: Repository[MessageRecord] = field(default_factory=InMemoryRepository)
    reservations: Repository[Reservation] = field(default_factory=InMemoryRepository)
    review_requests: Repository[ReviewRequest] = field(default_factory=InMemoryRepository)
    accounts: Repository[AccountSettings] = field(
        default_factory=lambda: InMemoryRepository(key=lambda a: a.account_id)
    )
    contacts: Repository[Contact] = field(
        default_factory=lambda: InMemoryRepository(
            key=lambda c: contact_key(c.account_id, c.sender_id)
        )
    )

    async def active_flows(self, account_id: str) -> list[FlowGraph]:
        """Active flows of *account_id* sorted by id, the order trigger matching relies on."""
        flows = [
            f
            for f in await self.flows.list()
            if f.is_active and f.account_id in (None, account_id)
        ]
        return sorted(flows, key=lambda f: f.id)
