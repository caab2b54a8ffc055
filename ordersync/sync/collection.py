"""
Collection State Merger

An ordered, id-keyed in-memory list of records: the state a view renders
(chat transcripts, order lists, chat lists). Insert, update and delete
notifications are merged idempotently, so a duplicate or replayed
notification never produces a second entry for the same id.

Ordering:
    - OLDEST_FIRST: chat transcripts (by ``sent_at``)
    - NEWEST_FIRST: admin order and chat lists (by ``created_at``)
    - INSERTION: arrival order
"""

from enum import Enum
from typing import Any, Generic, Iterable, Iterator, Optional, TypeVar

from ordersync.schemas import ChangeType, SyncRecord

R = TypeVar("R", bound=SyncRecord)


class SortOrder(str, Enum):
    OLDEST_FIRST = "oldest_first"
    NEWEST_FIRST = "newest_first"
    INSERTION = "insertion"


def is_stale(current: Any, incoming: Any) -> bool:
    """
    True when ``incoming`` is an older version of ``current``.

    Uses each record's ``updated_at`` as a fencing token; records without
    one are never considered stale.
    """
    current_version = getattr(current, "updated_at", None)
    incoming_version = getattr(incoming, "updated_at", None)
    if current_version is None or incoming_version is None:
        return False
    return incoming_version < current_version


class LiveCollection(Generic[R]):
    """
    Ordered collection with at most one entry per id.

    Example:
        >>> messages = LiveCollection(SortOrder.OLDEST_FIRST, sort_key="sent_at")
        >>> messages.upsert(message)
        >>> messages.upsert(message)  # same id: replaced, not appended
        >>> len(messages)
        1
    """

    def __init__(
        self,
        order: SortOrder = SortOrder.INSERTION,
        sort_key: Optional[str] = None,
        records: Iterable[R] = (),
    ):
        if order != SortOrder.INSERTION and not sort_key:
            raise ValueError(f"{order.value} collections need a sort_key")
        self.order = order
        self.sort_key = sort_key
        self._items: list[R] = []
        self.reset(records)

    # =========================================================================
    # READ API
    # =========================================================================

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[R]:
        return iter(list(self._items))

    def __contains__(self, key: object) -> bool:
        return self.index_of(key) is not None

    def __repr__(self) -> str:
        return f"<LiveCollection {self.order.value} size={len(self._items)}>"

    def index_of(self, key: object) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.id == key:
                return index
        return None

    def get(self, key: object) -> Optional[R]:
        index = self.index_of(key)
        return self._items[index] if index is not None else None

    def ids(self) -> list[str]:
        return [item.id for item in self._items]

    def snapshot(self) -> list[R]:
        """Copy of the current contents, in display order."""
        return list(self._items)

    # =========================================================================
    # MERGING
    # =========================================================================

    def reset(self, records: Iterable[R]) -> None:
        """Replace the contents (initial load), dropping duplicate ids."""
        self._items = []
        for record in records:
            self.upsert(record)

    def upsert(self, record: R) -> int:
        """
        Merge an inserted record.

        Replaces in place when the id is already present, otherwise inserts
        at the sorted position.

        Returns:
            int: Index of the record
        """
        index = self.index_of(record.id)
        if index is not None:
            self._items[index] = record
            return index
        index = self._position_for(record)
        self._items.insert(index, record)
        return index

    def update(self, record: R) -> bool:
        """
        Replace the entry with the same id.

        An update for an unknown id is a no-op: the insert (or its
        rehydration) has not landed yet and will carry the current state.
        """
        index = self.index_of(record.id)
        if index is None:
            return False
        self._items[index] = record
        return True

    def remove(self, key: object) -> Optional[R]:
        """Remove the entry with this id; no-op when absent."""
        index = self.index_of(key)
        if index is None:
            return None
        return self._items.pop(index)

    def replace(self, old_key: str, record: R) -> int:
        """
        Swap a placeholder for its confirmed record, in place.

        If the confirmed id already landed through another path (a realtime
        insert), the placeholder is dropped and the existing entry refreshed,
        so the confirmed record never appears twice.
        """
        placeholder_index = self.index_of(old_key)
        existing_index = self.index_of(record.id)

        if placeholder_index is None:
            return self.upsert(record)

        if existing_index is not None and existing_index != placeholder_index:
            del self._items[placeholder_index]
            existing_index = self.index_of(record.id)
            self._items[existing_index] = record
            return existing_index

        self._items[placeholder_index] = record
        if self._in_order(placeholder_index):
            return placeholder_index
        # Server timestamp moved it past a neighbour
        self._items.pop(placeholder_index)
        index = self._position_for(record)
        self._items.insert(index, record)
        return index

    def apply(self, event_type: ChangeType, record: Any) -> bool:
        """
        Dispatch a change: insert → upsert, update → update, delete → remove.

        For deletes ``record`` may be a record, a key-bearing dict or the key.

        Returns:
            bool: Whether the collection changed
        """
        if event_type == ChangeType.INSERT:
            self.upsert(record)
            return True
        if event_type == ChangeType.UPDATE:
            return self.update(record)
        return self.remove(_key_of(record)) is not None

    def apply_fenced(self, event_type: ChangeType, record: R) -> bool:
        """Like ``apply`` but ignores records older than the held version."""
        if event_type != ChangeType.DELETE:
            current = self.get(record.id)
            if current is not None and is_stale(current, record):
                return False
        return self.apply(event_type, record)

    def _in_order(self, index: int) -> bool:
        if self.order == SortOrder.INSERTION:
            return True
        key = getattr(self._items[index], self.sort_key)
        before = getattr(self._items[index - 1], self.sort_key) if index > 0 else None
        after = (
            getattr(self._items[index + 1], self.sort_key)
            if index + 1 < len(self._items) else None
        )
        if self.order == SortOrder.OLDEST_FIRST:
            return (before is None or before <= key) and (after is None or key <= after)
        return (before is None or before >= key) and (after is None or key >= after)

    def _position_for(self, record: R) -> int:
        if self.order == SortOrder.INSERTION:
            return len(self._items)

        key = getattr(record, self.sort_key)
        # Stable: equal keys keep arrival order
        for index in range(len(self._items) - 1, -1, -1):
            other = getattr(self._items[index], self.sort_key)
            if self.order == SortOrder.OLDEST_FIRST and other <= key:
                return index + 1
            if self.order == SortOrder.NEWEST_FIRST and other >= key:
                return index + 1
        return 0


def _key_of(record: Any) -> Any:
    if isinstance(record, dict):
        return record.get("id")
    return getattr(record, "id", record)
