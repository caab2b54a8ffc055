"""
Transient Notification Service

Short-lived, user-facing notices ("Order status updated to ready",
"Failed to send message"). Views push notices here instead of raising;
the HTTP layer drains them for the client to display.

Version: 1.0.0
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ordersync.core.config import get_settings
from ordersync.schemas import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    """A single transient notification."""
    level: str
    message: str
    created_at: datetime = field(default_factory=utcnow)


class Notifier:
    """
    Bounded buffer of transient notices.

    When the buffer is full the oldest notice is dropped.
    """

    def __init__(self, buffer_size: Optional[int] = None):
        size = buffer_size or get_settings().notification_buffer_size
        self._notices: deque[Notice] = deque(maxlen=size)

    def _push(self, level: str, message: str) -> Notice:
        notice = Notice(level=level, message=message)
        self._notices.append(notice)
        return notice

    def success(self, message: str) -> Notice:
        logger.info(f"Notice: {message}")
        return self._push("success", message)

    def info(self, message: str) -> Notice:
        logger.info(f"Notice: {message}")
        return self._push("info", message)

    def error(self, message: str) -> Notice:
        logger.warning(f"Error notice: {message}")
        return self._push("error", message)

    def recent(self) -> list[Notice]:
        """Pending notices, oldest first, without clearing them."""
        return list(self._notices)

    def drain(self) -> list[Notice]:
        """Return and clear pending notices."""
        notices = list(self._notices)
        self._notices.clear()
        return notices

    def messages(self, level: Optional[str] = None) -> list[str]:
        return [n.message for n in self._notices if level is None or n.level == level]
