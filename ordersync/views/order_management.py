"""
Admin Order Management View

All orders, newest first, kept live through the ``orders`` change channel.
Status edits are written first and applied locally once the write
returns; the change notification for the same write merges idempotently.
"""

import logging
from typing import Optional

from ordersync.schemas import (
    ChangeType,
    Order,
    OrderStatus,
    PaymentStatus,
    can_transition,
)
from ordersync.services.backend.base import BackendError, BaseBackendClient, RecordNotFound
from ordersync.services.notifier import Notifier
from ordersync.sync.channel import ChangeSubscriptionChannel
from ordersync.sync.collection import LiveCollection, SortOrder
from ordersync.sync.errors import InvalidTransition, WriteFailed
from ordersync.sync.rehydrator import RecordRehydrator

logger = logging.getLogger(__name__)


class OrderManagementView:
    """
    Live order list for the admin dashboard.

    Example:
        >>> async with OrderManagementView(backend, notifier=notifier) as view:
        ...     await view.update_order_status(order_id, OrderStatus.READY)
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        *,
        notifier: Optional[Notifier] = None,
        rehydrator: Optional[RecordRehydrator] = None,
    ):
        self.backend = backend
        self.notifier = notifier or Notifier()
        self.rehydrator = rehydrator or RecordRehydrator(backend)
        self.orders: LiveCollection[Order] = LiveCollection(
            SortOrder.NEWEST_FIRST, sort_key="created_at"
        )
        self.channel = ChangeSubscriptionChannel(
            backend,
            "orders",
            on_insert=self.orders.upsert,
            on_update=self._on_order_update,
            on_delete=self._on_order_delete,
            rehydrator=self.rehydrator,
            notifier=self.notifier,
        )
        self.mounted = False

    async def mount(self) -> None:
        await self.load()
        await self.channel.open()
        self.mounted = True

    async def unmount(self) -> None:
        await self.channel.close()
        self.mounted = False

    async def __aenter__(self) -> "OrderManagementView":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unmount()

    async def settle(self) -> None:
        await self.channel.settle()

    async def load(self) -> None:
        try:
            rows = await self.backend.fetch_many(
                "orders",
                order_by="created_at",
                descending=True,
                relations=("order_items",),
            )
        except BackendError as e:
            logger.error(f"Failed to load orders: {e}")
            self.notifier.error("Failed to load orders")
            return
        self.orders.reset(self.rehydrator.decode("orders", row) for row in rows)
        logger.info(f"Loaded {len(self.orders)} orders")

    def _on_order_update(self, order: Order) -> None:
        self.orders.apply_fenced(ChangeType.UPDATE, order)

    def _on_order_delete(self, fragment: dict) -> None:
        self.orders.apply(ChangeType.DELETE, fragment)

    def filter_by_status(self, status: Optional[OrderStatus] = None) -> list[Order]:
        if status is None:
            return self.orders.snapshot()
        return [order for order in self.orders if order.status == status]

    def _require_order(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise RecordNotFound("orders", order_id)
        return order

    async def _write(self, order: Order, values: dict, failure: str) -> Order:
        try:
            row = await self.backend.update("orders", order.id, values)
        except BackendError as e:
            logger.error(f"Failed to update order {order.id}: {e}")
            self.notifier.error(failure)
            raise WriteFailed(failure) from e

        updated = order.model_copy(update={**values, "updated_at": row.get("updated_at")})
        self.orders.apply_fenced(ChangeType.UPDATE, updated)
        return self.orders.get(order.id) or updated

    async def update_order_status(self, order_id: str, status: OrderStatus) -> Order:
        """
        Move an order to ``status``.

        Raises:
            RecordNotFound: Unknown order
            InvalidTransition: The workflow does not allow the change
            WriteFailed: The write failed
        """
        order = self._require_order(order_id)
        if order.is_terminal and status != order.status:
            raise InvalidTransition(f"Order {order.order_number} is already {order.status.value}")
        if not can_transition(order.status, status):
            raise InvalidTransition(
                f"Cannot move order {order.order_number} from {order.status.value} to {status.value}"
            )
        updated = await self._write(order, {"status": status}, "Failed to update order status")
        self.notifier.success(f"Order status updated to {status.value}")
        return updated

    async def update_payment_status(self, order_id: str, payment_status: PaymentStatus) -> Order:
        order = self._require_order(order_id)
        updated = await self._write(
            order, {"payment_status": payment_status}, "Failed to update payment status"
        )
        self.notifier.success(f"Payment status updated to {payment_status.value}")
        return updated
