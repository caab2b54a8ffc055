"""
Change Subscription Channel

Binds one backend change subscription (table + optional row filter) to a
set of consumer callbacks for the lifetime of a view.

    insert / update → Record Rehydrator → on_insert / on_update(record)
    delete          → on_delete(old key-bearing fragment)

A channel whose subscription cannot be established reports it once as a
transient notification and stays closed. It is never retried; the owning
view opens a new one when it is mounted again.
"""

import inspect
import logging
from typing import Any, Callable, Optional, Union

from ordersync.schemas import ChangeEvent, ChangeType
from ordersync.services.backend.base import (
    BackendError,
    BaseBackendClient,
    ChangeFilter,
    Subscription,
)
from ordersync.services.notifier import Notifier
from ordersync.sync.rehydrator import RecordRehydrator

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Any]


async def _invoke(callback: Optional[Callback], value: Any) -> None:
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class ChangeSubscriptionChannel:
    """
    Live change channel for one table.

    Example:
        >>> async with ChangeSubscriptionChannel(
        ...     backend,
        ...     "chat_messages",
        ...     change_filter=f"chat_id=eq.{chat_id}",
        ...     on_insert=messages.upsert,
        ... ) as channel:
        ...     ...
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        table: str,
        *,
        change_filter: Union[str, ChangeFilter, None] = None,
        on_insert: Optional[Callback] = None,
        on_update: Optional[Callback] = None,
        on_delete: Optional[Callback] = None,
        rehydrator: Optional[RecordRehydrator] = None,
        notifier: Optional[Notifier] = None,
    ):
        if isinstance(change_filter, str):
            change_filter = ChangeFilter.parse(change_filter)
        self.backend = backend
        self.table = table
        self.change_filter = change_filter
        self.on_insert = on_insert
        self.on_update = on_update
        self.on_delete = on_delete
        self.rehydrator = rehydrator or RecordRehydrator(backend)
        self.notifier = notifier
        self._subscription: Optional[Subscription] = None

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"<ChangeSubscriptionChannel {self.table} {self.change_filter or '*'} {state}>"

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def closed(self) -> bool:
        return not self.is_open

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def open(self) -> bool:
        """
        Establish the subscription.

        Returns:
            bool: True when live, False when establishment failed
        """
        if self.is_open:
            return True
        try:
            self._subscription = await self.backend.subscribe(
                self.table, self._handle, self.change_filter
            )
        except BackendError as e:
            logger.error(f"Subscription to {self.table} failed: {e}")
            if self.notifier is not None:
                self.notifier.error(f"Failed to subscribe to {self.table} changes")
            return False

        logger.info(f"Subscribed to {self.table} changes ({self.change_filter or 'all rows'})")
        return True

    async def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()

    async def settle(self) -> None:
        """Wait until every notification delivered so far has been handled."""
        if self._subscription is not None:
            await self._subscription.join()

    async def __aenter__(self) -> "ChangeSubscriptionChannel":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def _handle(self, event: ChangeEvent) -> None:
        if event.event_type == ChangeType.DELETE:
            await _invoke(self.on_delete, event.old_record)
            return

        callback = self.on_insert if event.event_type == ChangeType.INSERT else self.on_update
        if callback is None:
            return

        record = await self.rehydrator.rehydrate(self.table, event.key)
        if record is None:
            return
        # Closed while the fetch was in flight
        if self.closed:
            logger.debug(f"Discarding {self.table} {event.key}: channel closed")
            return
        await _invoke(callback, record)
