"""
Record Rehydrator

Change notifications carry at most the changed columns of a row. Before a
consumer sees an inserted or updated record, the rehydrator re-fetches it
by primary key together with its one-hop relations (an order's items, a
chat's messages) and decodes it into the typed record.

A failed fetch (missing row, backend error, invalid payload) is logged and
dropped: consumers receive a complete record or nothing.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from ordersync.schemas import ChatMessage, Invoice, Order, SupportChat, SyncRecord
from ordersync.services.backend.base import BackendError, BaseBackendClient
from ordersync.sync.collection import is_stale
from ordersync.sync.errors import InvalidRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    """How records of one table are fetched and decoded."""
    model: type[SyncRecord]
    relations: tuple[str, ...] = ()


DEFAULT_TABLES: dict[str, TableSpec] = {
    "orders": TableSpec(Order, ("order_items",)),
    "support_chats": TableSpec(SupportChat, ("chat_messages",)),
    "chat_messages": TableSpec(ChatMessage),
    "invoices": TableSpec(Invoice, ("invoice_items",)),
}


class RecordRehydrator:
    """
    Fetches full typed records for change notifications.

    Example:
        >>> rehydrator = RecordRehydrator(backend)
        >>> order = await rehydrator.rehydrate("orders", event.key)
        >>> order.items[0].name
        'Paneer Tikka'
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        tables: Optional[dict[str, TableSpec]] = None,
    ):
        self.backend = backend
        self.tables = dict(DEFAULT_TABLES if tables is None else tables)

    def spec_for(self, table: str) -> TableSpec:
        try:
            return self.tables[table]
        except KeyError:
            raise ValueError(f"No record type registered for table {table}") from None

    def decode(self, table: str, row: dict) -> SyncRecord:
        """
        Validate a raw row into its typed record.

        Raises:
            InvalidRecord: If the row does not validate
        """
        try:
            return self.spec_for(table).model.model_validate(row)
        except ValidationError as e:
            raise InvalidRecord(table, str(row.get("id")), str(e)) from e

    async def fetch(self, table: str, key: str) -> SyncRecord:
        """
        Fetch and decode one record, raising on any failure.

        Raises:
            RecordNotFound: The row no longer exists
            BackendError: The fetch failed
            InvalidRecord: The row did not validate
        """
        spec = self.spec_for(table)
        row = await self.backend.fetch_one(table, key, relations=spec.relations)
        return self.decode(table, row)

    async def rehydrate(self, table: str, key: str) -> Optional[SyncRecord]:
        """
        Fetch and decode one record, or None when that is not possible.

        Returns:
            The full typed record, or None (failure already logged)
        """
        try:
            return await self.fetch(table, key)
        except (BackendError, InvalidRecord) as e:
            logger.warning(f"Dropping {table} change for {key}: {e}")
            return None

    @staticmethod
    def is_stale(current: Optional[SyncRecord], fetched: SyncRecord) -> bool:
        """True when ``fetched`` is older than the ``current`` version held."""
        if current is None:
            return False
        return is_stale(current, fetched)
