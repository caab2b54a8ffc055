"""
Order Tracking View

Customer-facing live view of one order. Kept current three ways:
    - initial fetch on mount
    - ``orders`` change channel filtered to this order
    - polling fallback (every ``poll_interval_seconds``, 5 s by default),
      which also reloads the invoice

Channel updates are fenced by ``updated_at``; polling ticks are
last-write-wins and may overwrite a local status edit that the backend has
not confirmed yet.
"""

import logging
from typing import Optional

from ordersync.schemas import Invoice, Order, OrderStatus
from ordersync.services.backend.base import BackendError, BaseBackendClient
from ordersync.services.invoices import InvoiceService
from ordersync.services.notifier import Notifier
from ordersync.sync.channel import ChangeSubscriptionChannel
from ordersync.sync.errors import SyncError
from ordersync.sync.poller import PollingFallback
from ordersync.sync.rehydrator import RecordRehydrator

logger = logging.getLogger(__name__)

# Progress steps shown to the customer
TRACKING_STEPS = (
    OrderStatus.PENDING,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
)


class OrderTrackingView:
    """
    Live state of one order for the tracking page.

    Example:
        >>> async with OrderTrackingView(backend, order_id, notifier=notifier) as view:
        ...     view.order.status
        <OrderStatus.PREPARING: 'preparing'>
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        order_id: str,
        *,
        notifier: Optional[Notifier] = None,
        poll_interval: Optional[float] = None,
        rehydrator: Optional[RecordRehydrator] = None,
        invoices: Optional[InvoiceService] = None,
    ):
        self.backend = backend
        self.order_id = order_id
        self.notifier = notifier or Notifier()
        self.rehydrator = rehydrator or RecordRehydrator(backend)
        self.invoices = invoices or InvoiceService(backend)

        self.order: Optional[Order] = None
        self.invoice: Optional[Invoice] = None
        self.error: Optional[str] = None

        self.channel = ChangeSubscriptionChannel(
            backend,
            "orders",
            change_filter=f"id=eq.{order_id}",
            on_update=self._on_remote_update,
            rehydrator=self.rehydrator,
            notifier=self.notifier,
        )
        self.poller = PollingFallback(
            self._fetch_order,
            self._replace_order,
            interval=poll_interval,
            name=f"order-poll:{order_id}",
        )
        self.mounted = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def mount(self) -> None:
        await self.refresh()
        await self.channel.open()
        self.poller.start()
        self.mounted = True
        logger.info(f"Tracking order {self.order_id}")

    async def unmount(self) -> None:
        await self.poller.stop()
        await self.channel.close()
        self.mounted = False
        logger.info(f"Stopped tracking order {self.order_id}")

    async def __aenter__(self) -> "OrderTrackingView":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unmount()

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def current_step(self) -> int:
        """Index into TRACKING_STEPS; confirmed counts as received, -1 if cancelled."""
        if self.order is None:
            return -1
        if self.order.status == OrderStatus.CONFIRMED:
            return 0
        try:
            return TRACKING_STEPS.index(self.order.status)
        except ValueError:
            return -1

    async def _fetch_order(self) -> Order:
        return await self.rehydrator.fetch("orders", self.order_id)

    async def _replace_order(self, order: Order) -> None:
        self.order = order
        # The invoice may have been created since the last tick
        await self._load_invoice()

    async def refresh(self) -> Optional[Order]:
        """Fetch the order (and its invoice, if any)."""
        try:
            self.order = await self._fetch_order()
        except (BackendError, SyncError) as e:
            logger.error(f"Failed to load order {self.order_id}: {e}")
            self.error = str(e)
            self.notifier.error("Failed to load order details")
            return None

        self.error = None
        await self._load_invoice()
        return self.order

    async def _load_invoice(self) -> None:
        try:
            self.invoice = await self.invoices.get_invoice(self.order_id)
        except BackendError as e:
            # Invoice is optional on this page
            logger.warning(f"Invoice lookup for order {self.order_id} failed: {e}")

    async def _on_remote_update(self, order: Order) -> None:
        previous = self.order
        if self.rehydrator.is_stale(previous, order):
            logger.debug(f"Ignoring stale update for order {order.id}")
            return
        self.order = order
        if previous is not None and previous.status != order.status:
            self.notifier.success(f"Order status updated to {order.status.value}")

    def apply_local_status(self, status: OrderStatus) -> None:
        """
        Show a status change before the backend confirms it.

        The next polling tick replaces it with the stored status.
        """
        if self.order is not None:
            self.order = self.order.model_copy(update={"status": status})
