"""
In-Memory Backend Client

Simulates the managed backend without a database or Redis.
Used in development mode (ENV_MODE=development) and by the test suite.

Behavior:
    - Dict-backed tables keyed by server-assigned uuid ids
    - Relations resolved by foreign key, children ordered like the real store
    - Change feed fan-out mirroring the real one: insert payloads carry the
      row, update payloads carry only the changed columns plus the id,
      delete payloads carry the id only
    - Optional simulated latency and one-shot failure injection

Version: 1.0.0
"""

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from datetime import timedelta
from enum import Enum
from typing import Any, Optional, Sequence

from ordersync.schemas import ChangeEvent, ChangeType, utcnow
from ordersync.services.backend.base import (
    CHILD_ORDER,
    UNIQUE_COLUMNS,
    BackendError,
    BaseBackendClient,
    ChangeFilter,
    ChangeHandler,
    DuplicateRecord,
    RecordNotFound,
    Subscription,
    SubscriptionError,
    changed_columns,
    matches_filters,
    relation_foreign_key,
)

logger = logging.getLogger(__name__)


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    """Store enum members by value, like the real store does."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


def _sort_key(column: Optional[str]):
    def key(row: dict[str, Any]):
        value = row.get(column) if column else None
        return (value is None, value)
    return key


class InMemoryBackendClient(BaseBackendClient):
    """
    Mock implementation of the backend client.

    Attributes:
        latency: Seconds awaited before every call (0 = no suspension)
        fail_subscribe: When True, every subscribe() raises SubscriptionError

    Example:
        >>> backend = InMemoryBackendClient()
        >>> order = await backend.insert("orders", {"customer_name": "Ana"})
        >>> (await backend.fetch_one("orders", order["id"]))["customer_name"]
        'Ana'
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.fail_subscribe = False
        self._tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._subscriptions: list[Subscription] = []
        self._failures: dict[str, BackendError] = {}
        self.calls: list[tuple[str, str]] = []
        logger.info(f"InMemoryBackendClient initialized (latency={latency}s)")

    @property
    def provider_name(self) -> str:
        return "memory"

    # =========================================================================
    # TEST HOOKS
    # =========================================================================

    def seed(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """Store rows directly, without change notifications."""
        stored = []
        for values in rows:
            row = self._prepare_insert(table, values)
            self._tables[table][row["id"]] = row
            stored.append(copy.deepcopy(row))
        return stored

    def fail_next(self, operation: str, error: Optional[BackendError] = None) -> None:
        """Make the next call of ``operation`` (e.g. "insert") raise."""
        self._failures[operation] = error or BackendError(f"Simulated {operation} failure")

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._tables[table].values()]

    @property
    def subscription_count(self) -> int:
        return sum(1 for s in self._subscriptions if s.active)

    async def emit(self, event: ChangeEvent, row: Optional[dict[str, Any]] = None) -> None:
        """Push a hand-made notification through the feed."""
        self._publish(event, row if row is not None else (event.new_record or event.old_record))

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _before(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        if self.latency:
            await asyncio.sleep(self.latency)
        error = self._failures.pop(operation, None)
        if error is not None:
            logger.warning(f"Mock {operation} on {table} failed (simulated)")
            raise error

    def _prepare_insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        row = _plain(copy.deepcopy(values))
        now = utcnow()
        row.setdefault("id", uuid.uuid4().hex)
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)
        if table == "chat_messages":
            row.setdefault("sent_at", now)
            row.setdefault("read", False)
        if row["id"] in self._tables[table]:
            raise DuplicateRecord(f"Duplicate key {row['id']} in {table}", table=table, key=row["id"])
        for column in UNIQUE_COLUMNS.get(table, ()):
            if any(other.get(column) == row.get(column) for other in self._tables[table].values()):
                raise DuplicateRecord(
                    f"Duplicate {column} {row.get(column)} in {table}", table=table, key=row["id"]
                )
        return row

    def _touch(self, row: dict[str, Any]) -> None:
        now = utcnow()
        previous = row.get("updated_at")
        # Keep updated_at strictly increasing per row
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        row["updated_at"] = now

    def _with_relations(
        self,
        table: str,
        row: dict[str, Any],
        relations: Sequence[str],
    ) -> dict[str, Any]:
        result = copy.deepcopy(row)
        for relation in relations:
            fk = relation_foreign_key(table, relation)
            children = [
                copy.deepcopy(child)
                for child in self._tables[relation].values()
                if child.get(fk) == row["id"]
            ]
            children.sort(key=_sort_key(CHILD_ORDER.get(relation)))
            result[relation] = children
        return result

    def _publish(self, event: ChangeEvent, row: Optional[dict[str, Any]]) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                self._subscriptions.remove(subscription)
                continue
            if subscription.table == event.table and subscription.accepts(row):
                subscription.deliver(event)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def fetch_one(
        self,
        table: str,
        key: str,
        relations: Sequence[str] = (),
    ) -> dict[str, Any]:
        await self._before("fetch_one", table)
        row = self._tables[table].get(key)
        if row is None:
            raise RecordNotFound(table, key)
        return self._with_relations(table, row, relations)

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
        await self._before("fetch_many", table)
        rows = [r for r in self._tables[table].values() if matches_filters(r, filters)]
        if order_by:
            rows.sort(key=_sort_key(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [self._with_relations(table, r, relations) for r in rows]

    # =========================================================================
    # WRITES
    # =========================================================================

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        await self._before("insert", table)
        row = self._prepare_insert(table, values)
        self._tables[table][row["id"]] = row
        self._publish_insert(table, row)
        return copy.deepcopy(row)

    async def insert_with_children(
        self,
        table: str,
        values: dict[str, Any],
        children: dict[str, list[dict[str, Any]]],
    ) -> dict[str, Any]:
        await self._before("insert_with_children", table)
        row = self._prepare_insert(table, values)
        prepared = {}
        for relation, rows in children.items():
            fk = relation_foreign_key(table, relation)
            prepared[relation] = [self._prepare_insert(relation, {**child, fk: row["id"]}) for child in rows]

        # Every row validated before any is stored
        self._tables[table][row["id"]] = row
        self._publish_insert(table, row)
        for relation, rows in prepared.items():
            for child in rows:
                self._tables[relation][child["id"]] = child
                self._publish_insert(relation, child)
        return self._with_relations(table, row, list(children))

    def _publish_insert(self, table: str, row: dict[str, Any]) -> None:
        self._publish(
            ChangeEvent(
                event_type=ChangeType.INSERT,
                table=table,
                new_record=copy.deepcopy(row),
            ),
            row,
        )

    async def update(self, table: str, key: str, values: dict[str, Any]) -> dict[str, Any]:
        await self._before("update", table)
        return self._update_row(table, key, values)

    def _update_row(self, table: str, key: str, values: dict[str, Any]) -> dict[str, Any]:
        row = self._tables[table].get(key)
        if row is None:
            raise RecordNotFound(table, key)

        diff = changed_columns(row, _plain(values))
        row.update(diff)
        self._touch(row)

        # Column diff only, like the real feed
        self._publish(
            ChangeEvent(
                event_type=ChangeType.UPDATE,
                table=table,
                new_record={"id": key, **copy.deepcopy(diff), "updated_at": row["updated_at"]},
                old_record={"id": key},
            ),
            row,
        )
        return copy.deepcopy(row)

    async def update_where(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        await self._before("update_where", table)
        keys = [k for k, r in self._tables[table].items() if matches_filters(r, filters)]
        return [self._update_row(table, k, values) for k in keys]

    async def delete(self, table: str, key: str) -> None:
        await self._before("delete", table)
        row = self._tables[table].pop(key, None)
        if row is None:
            raise RecordNotFound(table, key)
        self._publish(
            ChangeEvent(event_type=ChangeType.DELETE, table=table, old_record={"id": key}),
            row,
        )

    # =========================================================================
    # CHANGE FEED
    # =========================================================================

    async def subscribe(
        self,
        table: str,
        handler: ChangeHandler,
        change_filter: Optional[ChangeFilter] = None,
    ) -> Subscription:
        await self._before("subscribe", table)
        if self.fail_subscribe:
            raise SubscriptionError(f"Simulated subscription failure on {table}", table=table)

        subscription = Subscription(table, handler, change_filter)
        subscription.start()
        self._subscriptions.append(subscription)
        logger.debug(f"Mock subscription opened on {table} ({change_filter or 'all rows'})")
        return subscription

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()
        self._subscriptions.clear()


def seed_demo_data(backend: InMemoryBackendClient) -> None:
    """Populate a development backend with a few orders and a chat."""
    orders = backend.seed("orders", [
        {
            "customer_name": "Priya Sharma",
            "customer_phone": "+91-98200-11111",
            "table_number": "4",
            "status": "preparing",
            "payment_status": "completed",
            "payment_method": "upi",
            "subtotal": 640.0,
            "total_amount": 640.0,
        },
        {
            "customer_name": "Rahul Mehta",
            "customer_phone": "+91-98200-22222",
            "table_number": "7",
            "status": "pending",
            "payment_method": "cash",
            "subtotal": 310.0,
            "total_amount": 310.0,
        },
    ])
    backend.seed("order_items", [
        {"order_id": orders[0]["id"], "name": "Paneer Tikka", "quantity": 2, "price": 220.0},
        {"order_id": orders[0]["id"], "name": "Butter Naan", "quantity": 4, "price": 50.0},
        {"order_id": orders[1]["id"], "name": "Masala Dosa", "quantity": 2, "price": 155.0},
    ])
    chat = backend.seed("support_chats", [
        {
            "order_id": orders[0]["id"],
            "customer_id": "cust-priya",
            "issue": "Order delayed?",
            "category": "order-issue",
        },
    ])[0]
    backend.seed("chat_messages", [
        {
            "chat_id": chat["id"],
            "sender_id": "cust-priya",
            "sender_type": "customer",
            "content": "Order delayed?",
        },
    ])
    logger.info("Demo data seeded (2 orders, 1 support chat)")
