"""
Customer Support Chat View

The customer's side of the support chat attached to an order.

    - Transcript ordered oldest first by ``sent_at``
    - ``chat_messages`` channel (filtered to this chat) merges admin replies;
      the customer's own messages arrive through the optimistic path and
      merge idempotently when their notification lands too
    - ``support_chats`` channel (filtered to this chat) follows status
      changes, e.g. the admin resolving the chat
"""

import logging
from typing import Optional

from ordersync.schemas import (
    ChangeType,
    ChatMessage,
    ChatStatus,
    SenderType,
    SupportChat,
    utcnow,
)
from ordersync.services.backend.base import BackendError, BaseBackendClient
from ordersync.services.notifier import Notifier
from ordersync.sync.channel import ChangeSubscriptionChannel
from ordersync.sync.collection import LiveCollection, SortOrder
from ordersync.sync.errors import InvalidTransition
from ordersync.sync.optimistic import OptimisticReconciler
from ordersync.sync.rehydrator import RecordRehydrator

logger = logging.getLogger(__name__)


class SupportChatView:
    """
    Live support chat for one customer and order.

    Example:
        >>> async with SupportChatView(backend, order_id, customer_id) as chat:
        ...     await chat.send_message("Where is my order?")
        ...     [m.content for m in chat.messages]
        ['Where is my order?']
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        order_id: str,
        customer_id: str,
        *,
        notifier: Optional[Notifier] = None,
        rehydrator: Optional[RecordRehydrator] = None,
    ):
        self.backend = backend
        self.order_id = order_id
        self.customer_id = customer_id
        self.notifier = notifier or Notifier()
        self.rehydrator = rehydrator or RecordRehydrator(backend)

        self.chat: Optional[SupportChat] = None
        self.messages: LiveCollection[ChatMessage] = LiveCollection(
            SortOrder.OLDEST_FIRST, sort_key="sent_at"
        )
        self.reconciler = OptimisticReconciler(self.messages, notifier=self.notifier)

        self._message_channel: Optional[ChangeSubscriptionChannel] = None
        self._chat_channel: Optional[ChangeSubscriptionChannel] = None
        self.mounted = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def mount(self) -> None:
        await self.load()
        self.mounted = True

    async def unmount(self) -> None:
        await self._close_channels()
        self.mounted = False

    async def __aenter__(self) -> "SupportChatView":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unmount()

    async def load(self) -> Optional[SupportChat]:
        """Load the latest chat for this order and subscribe to it."""
        try:
            rows = await self.backend.fetch_many(
                "support_chats",
                filters={"order_id": self.order_id, "customer_id": self.customer_id},
                order_by="created_at",
                descending=True,
                relations=("chat_messages",),
                limit=1,
            )
        except BackendError as e:
            logger.error(f"Failed to load support chat for order {self.order_id}: {e}")
            self.notifier.error("Failed to load support chat")
            return None

        if rows:
            await self._attach(self.rehydrator.decode("support_chats", rows[0]))
        return self.chat

    async def _attach(self, chat: SupportChat) -> None:
        self.chat = chat
        self.messages.reset(chat.messages)
        await self._close_channels()

        self._message_channel = ChangeSubscriptionChannel(
            self.backend,
            "chat_messages",
            change_filter=f"chat_id=eq.{chat.id}",
            on_insert=self.messages.upsert,
            on_update=self._on_message_update,
            on_delete=self._on_message_delete,
            rehydrator=self.rehydrator,
            notifier=self.notifier,
        )
        self._chat_channel = ChangeSubscriptionChannel(
            self.backend,
            "support_chats",
            change_filter=f"id=eq.{chat.id}",
            on_update=self._on_chat_update,
            rehydrator=self.rehydrator,
            notifier=self.notifier,
        )
        await self._message_channel.open()
        await self._chat_channel.open()

    async def _close_channels(self) -> None:
        for channel in (self._message_channel, self._chat_channel):
            if channel is not None:
                await channel.close()

    async def settle(self) -> None:
        """Wait for pending change notifications to be handled."""
        for channel in (self._message_channel, self._chat_channel):
            if channel is not None:
                await channel.settle()

    # =========================================================================
    # CHANGE HANDLERS
    # =========================================================================

    def _on_message_update(self, message: ChatMessage) -> None:
        self.messages.apply_fenced(ChangeType.UPDATE, message)

    def _on_message_delete(self, fragment: dict) -> None:
        self.messages.apply(ChangeType.DELETE, fragment)

    def _on_chat_update(self, chat: SupportChat) -> None:
        if self.rehydrator.is_stale(self.chat, chat):
            return
        previous = self.chat
        self.chat = chat
        # Keep unconfirmed placeholders; server messages come from the rehydrated chat
        for message in chat.messages:
            self.messages.upsert(message)
        if previous is not None and previous.status != chat.status and chat.is_resolved:
            self.notifier.info("This chat has been resolved")

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def start_chat(self, issue: str, category: str = "general") -> SupportChat:
        """Open a new support chat for the order."""
        row = await self.backend.insert("support_chats", {
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "issue": issue,
            "category": category,
            "status": ChatStatus.ACTIVE.value,
        })
        chat = self.rehydrator.decode("support_chats", {**row, "chat_messages": []})
        await self._attach(chat)
        logger.info(f"Support chat {chat.id} started for order {self.order_id}")
        return chat

    async def send_message(self, text: str) -> Optional[ChatMessage]:
        """
        Send a customer message optimistically.

        Starts a chat first when the order has none.

        Returns:
            The confirmed message, or None for blank input

        Raises:
            InvalidTransition: The chat is resolved
            WriteFailed: The write failed (placeholder handled per policy)
        """
        content = text.strip()
        if not content:
            return None

        if self.chat is None:
            try:
                await self.start_chat(content)
            except BackendError as e:
                logger.error(f"Failed to start support chat: {e}")
                self.notifier.error("Failed to start support chat")
                raise
        if self.chat.is_resolved:
            raise InvalidTransition("Cannot send messages to a resolved chat")

        chat_id = self.chat.id
        values = {
            "chat_id": chat_id,
            "sender_id": self.customer_id,
            "sender_type": SenderType.CUSTOMER.value,
            "content": content,
        }

        async def write() -> ChatMessage:
            row = await self.backend.insert("chat_messages", values)
            return self.rehydrator.decode("chat_messages", row)

        message = await self.reconciler.submit(
            lambda temp_id: ChatMessage(
                id=temp_id,
                chat_id=chat_id,
                sender_id=self.customer_id,
                sender_type=SenderType.CUSTOMER,
                content=content,
                sent_at=utcnow(),
                pending=True,
            ),
            write,
        )

        try:
            await self.backend.update("support_chats", chat_id, {"last_message_at": message.sent_at})
        except BackendError as e:
            logger.warning(f"Could not bump last_message_at on chat {chat_id}: {e}")
        return message

    async def mark_messages_read(self) -> int:
        """
        Mark the admin's messages as read.

        Returns:
            int: Number of messages updated (0 on failure)
        """
        if self.chat is None:
            return 0
        try:
            rows = await self.backend.update_where(
                "chat_messages",
                {"chat_id": self.chat.id, "sender_type": SenderType.ADMIN.value, "read": False},
                {"read": True},
            )
        except BackendError as e:
            logger.error(f"Failed to mark messages read in chat {self.chat.id}: {e}")
            return 0
        for row in rows:
            self.messages.update(self.rehydrator.decode("chat_messages", row))
        return len(rows)
