"""
Optimistic Update Reconciler

User-initiated inserts (chat messages) are shown immediately as a
placeholder record carrying a temporary id, then reconciled once the
write returns.

Lifecycle of one write:
    synthesized → in flight → confirmed (placeholder replaced in place)
                            → failed    (handled per OptimisticFailurePolicy)

The confirmed server record may also arrive through the change feed before
the write returns. The collection merge makes both arrival orders end with
exactly one entry for the server id.
"""

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from ordersync.core.config import OptimisticFailurePolicy, get_settings
from ordersync.schemas import SyncRecord
from ordersync.services.backend.base import BackendError
from ordersync.services.notifier import Notifier
from ordersync.sync.collection import LiveCollection
from ordersync.sync.errors import InvalidRecord, WriteFailed

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncRecord)

TEMP_ID_PREFIX = "temp-"

# Failed actions kept for inspection, oldest dropped first
FAILED_HISTORY = 20


class TempIdFactory:
    """
    Issues placeholder ids of the form ``temp-<ms timestamp>-<counter>``.

    Server ids are uuid hex strings and never start with ``temp-``.
    """

    def __init__(self):
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{next(self._counter)}"

    @staticmethod
    def is_temp(key: str) -> bool:
        return key.startswith(TEMP_ID_PREFIX)


class ActionState(str, Enum):
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class PendingAction:
    """Bookkeeping for one optimistic write."""
    temp_id: str
    placeholder: SyncRecord
    state: ActionState = ActionState.IN_FLIGHT
    confirmed_id: Optional[str] = None
    error: Optional[str] = None


class OptimisticReconciler:
    """
    Applies placeholders to a live collection and reconciles write outcomes.

    Attributes:
        collection: Collection the placeholders are merged into
        on_failure: Placeholder handling when a write fails
        actions: Writes still in flight, oldest first
        failed: Most recent failed writes

    Example:
        >>> reconciler = OptimisticReconciler(messages, notifier=notifier)
        >>> confirmed = await reconciler.submit(
        ...     lambda temp_id: ChatMessage(id=temp_id, ...),
        ...     lambda: backend.insert("chat_messages", values),
        ... )
    """

    def __init__(
        self,
        collection: LiveCollection[R],
        *,
        notifier: Optional[Notifier] = None,
        on_failure: Optional[OptimisticFailurePolicy] = None,
        temp_ids: Optional[TempIdFactory] = None,
        error_message: str = "Failed to send message",
    ):
        self.collection = collection
        self.notifier = notifier
        self.on_failure = on_failure or get_settings().optimistic_failure_policy
        self.temp_ids = temp_ids or TempIdFactory()
        self.error_message = error_message
        self.actions: list[PendingAction] = []
        self.failed: deque[PendingAction] = deque(maxlen=FAILED_HISTORY)

    @property
    def has_pending(self) -> bool:
        return bool(self.actions)

    async def submit(
        self,
        build_placeholder: Callable[[str], R],
        write: Callable[[], Awaitable[R]],
    ) -> R:
        """
        Show a placeholder, run the write, reconcile the outcome.

        Args:
            build_placeholder: Builds the placeholder record for a temp id
            write: Performs the backend write and returns the stored record

        Returns:
            The confirmed server record

        Raises:
            WriteFailed: The write failed; carries the placeholder
        """
        temp_id = self.temp_ids()
        placeholder = build_placeholder(temp_id)
        action = PendingAction(temp_id=temp_id, placeholder=placeholder)
        self.actions.append(action)

        # Local state changes before the write is issued
        self.collection.upsert(placeholder)

        try:
            confirmed = await write()
        except (BackendError, InvalidRecord) as e:
            self._fail(action, e)
            raise WriteFailed(self.error_message, placeholder=placeholder) from e
        finally:
            self.actions.remove(action)

        self.collection.replace(temp_id, confirmed)
        action.state = ActionState.CONFIRMED
        action.confirmed_id = confirmed.id
        logger.debug(f"Placeholder {temp_id} confirmed as {confirmed.id}")
        return confirmed

    def _fail(self, action: PendingAction, error: Exception) -> None:
        action.state = ActionState.FAILED
        action.error = str(error)
        self.failed.append(action)
        logger.warning(f"Optimistic write {action.temp_id} failed: {error}")

        if self.on_failure == OptimisticFailurePolicy.ROLLBACK:
            self.collection.remove(action.temp_id)
        elif self.on_failure == OptimisticFailurePolicy.MARK_FAILED:
            current = self.collection.get(action.temp_id)
            if current is not None and "failed" in type(current).model_fields:
                self.collection.update(current.model_copy(update={"failed": True, "pending": False}))

        if self.notifier is not None:
            self.notifier.error(self.error_message)
