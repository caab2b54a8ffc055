"""
Backend Client Abstract Base Class

Defines the interface contract for the managed backend the sync layer
talks to: point queries, writes, and the change-data-capture feed.
Both InMemoryBackendClient and SqlBackendClient implement these methods,
and every view receives its client explicitly at construction.

Design Pattern: Strategy Pattern
    - Views never import a module-level client
    - Development and tests run against the in-memory backend
    - Production runs against PostgreSQL plus a Redis change feed

Version: 1.0.0
"""

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from ordersync.schemas import ChangeEvent

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


# =============================================================================
# ERRORS
# =============================================================================

class BackendError(Exception):
    """Any failed call against the backend."""

    def __init__(self, message: str, *, table: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message)
        self.table = table
        self.key = key


class RecordNotFound(BackendError):
    """Point lookup matched no row."""

    def __init__(self, table: str, key: str):
        super().__init__(f"{table} record {key} not found", table=table, key=key)


class SubscriptionError(BackendError):
    """A change subscription could not be established."""


class DuplicateRecord(BackendError):
    """Insert violated a primary key or unique column."""


# =============================================================================
# RELATIONS
# =============================================================================

# parent table -> {child table: foreign key column on the child}
RELATIONS: dict[str, dict[str, str]] = {
    "orders": {"order_items": "order_id"},
    "support_chats": {"chat_messages": "chat_id"},
    "invoices": {"invoice_items": "invoice_id"},
}

# table -> columns no two rows may share
UNIQUE_COLUMNS: dict[str, tuple[str, ...]] = {
    "invoices": ("order_id",),
}

# child table -> column children are ordered by
CHILD_ORDER: dict[str, str] = {
    "order_items": "created_at",
    "chat_messages": "sent_at",
    "invoice_items": "created_at",
}


def relation_foreign_key(table: str, relation: str) -> str:
    """Foreign key column linking ``relation`` rows to ``table`` rows."""
    try:
        return RELATIONS[table][relation]
    except KeyError:
        raise BackendError(f"Unknown relation {relation} on {table}", table=table) from None


# =============================================================================
# CHANGE FILTERS & SUBSCRIPTIONS
# =============================================================================

@dataclass(frozen=True)
class ChangeFilter:
    """
    Equality filter on one column, written ``column=eq.value``.

    Filters are evaluated against the full row on the publishing side,
    never against the column-diff payload handed to subscribers.
    """
    column: str
    value: str

    @classmethod
    def parse(cls, expression: Optional[str]) -> Optional["ChangeFilter"]:
        """
        Parse a ``column=eq.value`` expression.

        Raises:
            ValueError: If the expression is not an equality filter
        """
        if not expression:
            return None
        column, sep, rest = expression.partition("=")
        if not sep or not rest.startswith("eq.") or not column:
            raise ValueError(f"Unsupported change filter: {expression!r}")
        return cls(column=column.strip(), value=rest[3:])

    def matches(self, row: Optional[dict[str, Any]]) -> bool:
        if not row or self.column not in row:
            return False
        value = row[self.column]
        value = getattr(value, "value", value)
        return str(value) == self.value

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


class Subscription:
    """
    Cancellable handle for one live change subscription.

    Notifications are queued and handled one at a time by a consumer task,
    so a single subscription observes events in delivery order even when
    its handler awaits network calls. ``unsubscribe()`` releases the
    subscription exactly once; further calls are no-ops.
    """

    def __init__(
        self,
        table: str,
        handler: ChangeHandler,
        change_filter: Optional[ChangeFilter] = None,
        *,
        on_cancel: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.table = table
        self.change_filter = change_filter
        self._handler = handler
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def start(self) -> None:
        """Start the consumer task. Must run inside the event loop."""
        if self._consumer is None:
            self._consumer = asyncio.create_task(
                self._consume(), name=f"subscription:{self.table}"
            )

    def accepts(self, row: Optional[dict[str, Any]]) -> bool:
        return self.change_filter is None or self.change_filter.matches(row)

    def deliver(self, event: ChangeEvent) -> None:
        """Queue a notification for the handler (never blocks)."""
        if not self._cancelled:
            self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Change handler for {self.table} failed on {event.event_type.value} {event.key}"
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued notification has been handled."""
        if not self._cancelled:
            await self._queue.join()

    async def unsubscribe(self) -> bool:
        """
        Release the subscription.

        Returns:
            bool: True on the first call, False if already released
        """
        if self._cancelled:
            return False
        self._cancelled = True

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            # A handler may unmount its own view
            if consumer is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer

        if self._on_cancel is not None:
            await self._on_cancel()
        logger.debug(f"Unsubscribed from {self.table} changes")
        return True


# =============================================================================
# CLIENT INTERFACE
# =============================================================================

class BaseBackendClient(ABC):
    """
    Abstract base class for backend clients.

    Rows are exchanged as plain dicts; decoding into typed records is the
    caller's job (see ``ordersync.schemas``). Requested relations are
    returned nested under the child table name, e.g. ``row["order_items"]``.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the backend provider name (e.g. "memory", "sql")."""
        pass

    async def initialize(self) -> None:
        """Prepare the backend (create tables, warm connections)."""

    @abstractmethod
    async def fetch_one(
        self,
        table: str,
        key: str,
        relations: Sequence[str] = (),
    ) -> dict[str, Any]:
        """
        Point lookup by primary key, with one-hop relations.

        Raises:
            RecordNotFound: No row with this key
            BackendError: Any other failure
        """
        pass

    @abstractmethod
    async def fetch_many(
        self,
        table: str,
        *,
        filters: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        relations: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """List rows matching all equality ``filters``."""
        pass

    @abstractmethod
    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a row and return it as stored (server id, timestamps).

        Raises:
            DuplicateRecord: The row violates the primary key or a unique column
        """
        pass

    @abstractmethod
    async def insert_with_children(
        self,
        table: str,
        values: dict[str, Any],
        children: dict[str, list[dict[str, Any]]],
    ) -> dict[str, Any]:
        """
        Insert a row and its child rows as one unit.

        ``children`` maps a relation of ``table`` to the rows to create; the
        foreign key is filled in. Either every row is stored or none is.
        Returns the parent row with the children nested under the relation.

        Raises:
            DuplicateRecord: The parent violates a unique column
        """
        pass

    @abstractmethod
    async def update(self, table: str, key: str, values: dict[str, Any]) -> dict[str, Any]:
        """
        Update one row by primary key and return it as stored.

        Raises:
            RecordNotFound: No row with this key
        """
        pass

    @abstractmethod
    async def update_where(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Update every row matching ``filters``; returns the updated rows."""
        pass

    @abstractmethod
    async def delete(self, table: str, key: str) -> None:
        """Delete one row by primary key."""
        pass

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        change_filter: Optional[ChangeFilter] = None,
    ) -> Subscription:
        """
        Open a change subscription on ``table``.

        Raises:
            SubscriptionError: If the subscription cannot be established
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify connectivity to the backend."""
        pass

    async def close(self) -> None:
        """Release connections held by the client."""


def changed_columns(row: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Columns of ``values`` that differ from ``row``."""
    return {k: v for k, v in values.items() if row.get(k) != v}


def matches_filters(row: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    if not filters:
        return True
    for column, expected in filters.items():
        value = row.get(column)
        if getattr(value, "value", value) != getattr(expected, "value", expected):
            return False
    return True


def strip_unknown(values: dict[str, Any], columns: Iterable[str]) -> dict[str, Any]:
    allowed = set(columns)
    return {k: v for k, v in values.items() if k in allowed}
