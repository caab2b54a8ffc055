"""
Polling Fallback

Periodic full re-fetch that covers gaps in change delivery on the order
tracking view. Every tick replaces local state with whatever the fetch
returns (last write wins), so a tick can overwrite an optimistic local
edit that the backend has not yet confirmed.
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from ordersync.core.config import get_settings
from ordersync.services.backend.base import BackendError
from ordersync.sync.errors import SyncError

logger = logging.getLogger(__name__)


class PollingFallback:
    """
    Calls ``fetch`` every ``interval`` seconds and hands the result to ``apply``.

    A failing tick is logged and the loop keeps going.

    Example:
        >>> poller = PollingFallback(fetch_order, view.replace_order)
        >>> poller.start()
        >>> ...
        >>> await poller.stop()
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        apply: Callable[[Any], Any],
        interval: Optional[float] = None,
        name: str = "poller",
    ):
        self.fetch = fetch
        self.apply = apply
        self.interval = interval or get_settings().poll_interval_seconds
        self.name = name
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> bool:
        """
        Run one fetch-and-replace tick.

        Returns:
            bool: Whether the tick applied a result
        """
        self.ticks += 1
        try:
            result = await self.fetch()
        except (BackendError, SyncError) as e:
            logger.warning(f"{self.name}: poll failed: {e}")
            return False
        if result is None:
            return False

        try:
            applied = self.apply(result)
            if inspect.isawaitable(applied):
                await applied
        except Exception:
            logger.exception(f"{self.name}: applying poll result failed")
            return False
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.poll_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug(f"{self.name}: polling every {self.interval}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        if task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.debug(f"{self.name}: stopped after {self.ticks} ticks")
