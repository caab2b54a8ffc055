"""
Admin Support Chat Dashboard

Every support chat, newest first, each with its own live transcript.

Channels:
    - support_chats: new chats (with a notice), status changes, deletes
    - chat_messages: messages of every chat, merged into that chat's
      transcript
"""

import logging
from typing import Optional

from ordersync.core.config import get_settings
from ordersync.schemas import (
    ChangeType,
    ChatMessage,
    ChatStatsResponse,
    ChatStatus,
    SenderType,
    SupportChat,
    utcnow,
)
from ordersync.services.backend.base import BackendError, BaseBackendClient, RecordNotFound
from ordersync.services.notifier import Notifier
from ordersync.sync.channel import ChangeSubscriptionChannel
from ordersync.sync.collection import LiveCollection, SortOrder
from ordersync.sync.errors import InvalidTransition, WriteFailed
from ordersync.sync.optimistic import OptimisticReconciler
from ordersync.sync.rehydrator import RecordRehydrator

logger = logging.getLogger(__name__)


class AdminChatDashboard:
    """
    Live list of support chats for the admin.

    Example:
        >>> async with AdminChatDashboard(backend, notifier=notifier) as dashboard:
        ...     await dashboard.send_message(chat_id, "Your food is on the way")
        ...     await dashboard.resolve_chat(chat_id)
    """

    def __init__(
        self,
        backend: BaseBackendClient,
        admin_id: Optional[str] = None,
        *,
        notifier: Optional[Notifier] = None,
        rehydrator: Optional[RecordRehydrator] = None,
    ):
        self.backend = backend
        self.admin_id = admin_id or get_settings().admin_id
        self.notifier = notifier or Notifier()
        self.rehydrator = rehydrator or RecordRehydrator(backend)

        self.chats: LiveCollection[SupportChat] = LiveCollection(
            SortOrder.NEWEST_FIRST, sort_key="created_at"
        )
        self._transcripts: dict[str, LiveCollection[ChatMessage]] = {}
        self._reconcilers: dict[str, OptimisticReconciler] = {}

        self.chat_channel = ChangeSubscriptionChannel(
            backend,
            "support_chats",
            on_insert=self._on_chat_insert,
            on_update=self._on_chat_update,
            on_delete=self._on_chat_delete,
            rehydrator=self.rehydrator,
            notifier=self.notifier,
        )
        self.message_channel = ChangeSubscriptionChannel(
            backend,
            "chat_messages",
            on_insert=self._on_message_insert,
            on_update=self._on_message_update,
            on_delete=self._on_message_delete,
            rehydrator=self.rehydrator,
            notifier=self.notifier,
        )
        self.mounted = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def mount(self) -> None:
        await self.load()
        await self.chat_channel.open()
        await self.message_channel.open()
        self.mounted = True

    async def unmount(self) -> None:
        await self.chat_channel.close()
        await self.message_channel.close()
        self.mounted = False

    async def __aenter__(self) -> "AdminChatDashboard":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.unmount()

    async def settle(self) -> None:
        await self.chat_channel.settle()
        await self.message_channel.settle()

    async def load(self) -> None:
        try:
            rows = await self.backend.fetch_many(
                "support_chats",
                order_by="created_at",
                descending=True,
                relations=("chat_messages",),
            )
        except BackendError as e:
            logger.error(f"Failed to load support chats: {e}")
            self.notifier.error("Failed to load support chats")
            return

        chats = [self.rehydrator.decode("support_chats", row) for row in rows]
        self.chats.reset(chats)
        self._transcripts.clear()
        self._reconcilers.clear()
        for chat in chats:
            self._transcript(chat.id).reset(chat.messages)
        logger.info(f"Loaded {len(chats)} support chats")

    # =========================================================================
    # READ API
    # =========================================================================

    def _transcript(self, chat_id: str) -> LiveCollection[ChatMessage]:
        transcript = self._transcripts.get(chat_id)
        if transcript is None:
            transcript = LiveCollection(SortOrder.OLDEST_FIRST, sort_key="sent_at")
            self._transcripts[chat_id] = transcript
            self._reconcilers[chat_id] = OptimisticReconciler(transcript, notifier=self.notifier)
        return transcript

    def chat(self, chat_id: str) -> Optional[SupportChat]:
        return self.chats.get(chat_id)

    def messages(self, chat_id: str) -> list[ChatMessage]:
        transcript = self._transcripts.get(chat_id)
        return transcript.snapshot() if transcript is not None else []

    def with_transcript(self, chat: SupportChat) -> SupportChat:
        """The chat record carrying its live transcript."""
        return chat.model_copy(update={"messages": self.messages(chat.id)})

    def unread_count(self, chat_id: str) -> int:
        chat = self.chats.get(chat_id)
        return self.with_transcript(chat).unread_count if chat is not None else 0

    def filter_chats(
        self,
        search: str = "",
        status: Optional[ChatStatus] = None,
    ) -> list[SupportChat]:
        """Chats whose order id or issue contains ``search``, optionally by status."""
        needle = search.strip().lower()
        return [
            chat for chat in self.chats
            if (not needle or needle in chat.order_id.lower() or needle in chat.issue.lower())
            and (status is None or chat.status == status)
        ]

    def stats(self) -> ChatStatsResponse:
        chats = self.chats.snapshot()
        return ChatStatsResponse(
            total=len(chats),
            active=sum(1 for c in chats if c.status == ChatStatus.ACTIVE),
            resolved=sum(1 for c in chats if c.status == ChatStatus.RESOLVED),
            unread=sum(self.unread_count(c.id) for c in chats),
        )

    # =========================================================================
    # CHANGE HANDLERS
    # =========================================================================

    def _on_chat_insert(self, chat: SupportChat) -> None:
        known = chat.id in self.chats
        self.chats.upsert(chat)
        transcript = self._transcript(chat.id)
        for message in chat.messages:
            transcript.upsert(message)
        if not known:
            self.notifier.info("New support request received!")

    def _on_chat_update(self, chat: SupportChat) -> None:
        if not self.chats.apply_fenced(ChangeType.UPDATE, chat):
            return
        transcript = self._transcript(chat.id)
        for message in chat.messages:
            transcript.upsert(message)

    def _on_chat_delete(self, fragment: dict) -> None:
        chat_id = fragment.get("id")
        self.chats.remove(chat_id)
        self._transcripts.pop(chat_id, None)
        self._reconcilers.pop(chat_id, None)

    def _on_message_insert(self, message: ChatMessage) -> None:
        # Messages of chats not loaded yet arrive with the chat itself
        if message.chat_id in self._transcripts:
            self._transcripts[message.chat_id].upsert(message)

    def _on_message_update(self, message: ChatMessage) -> None:
        transcript = self._transcripts.get(message.chat_id)
        if transcript is not None:
            transcript.apply_fenced(ChangeType.UPDATE, message)

    def _on_message_delete(self, fragment: dict) -> None:
        for transcript in self._transcripts.values():
            if transcript.remove(fragment.get("id")) is not None:
                return

    # =========================================================================
    # ACTIONS
    # =========================================================================

    def _require_chat(self, chat_id: str) -> SupportChat:
        chat = self.chats.get(chat_id)
        if chat is None:
            raise RecordNotFound("support_chats", chat_id)
        return chat

    async def send_message(self, chat_id: str, text: str) -> Optional[ChatMessage]:
        """
        Send an admin reply optimistically.

        Raises:
            RecordNotFound: Unknown chat
            InvalidTransition: The chat is resolved
            WriteFailed: The write failed
        """
        content = text.strip()
        if not content:
            return None
        chat = self._require_chat(chat_id)
        if chat.is_resolved:
            raise InvalidTransition("Cannot send messages to a resolved chat")

        self._transcript(chat_id)
        values = {
            "chat_id": chat_id,
            "sender_id": self.admin_id,
            "sender_type": SenderType.ADMIN.value,
            "content": content,
        }

        async def write() -> ChatMessage:
            row = await self.backend.insert("chat_messages", values)
            return self.rehydrator.decode("chat_messages", row)

        message = await self._reconcilers[chat_id].submit(
            lambda temp_id: ChatMessage(
                id=temp_id,
                chat_id=chat_id,
                sender_id=self.admin_id,
                sender_type=SenderType.ADMIN,
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

    async def resolve_chat(self, chat_id: str) -> SupportChat:
        """
        Mark a chat resolved. Resolution is one-way.

        Raises:
            RecordNotFound: Unknown chat
            WriteFailed: The write failed
        """
        chat = self._require_chat(chat_id)
        if chat.is_resolved:
            return chat

        try:
            row = await self.backend.update(
                "support_chats", chat_id, {"status": ChatStatus.RESOLVED.value}
            )
        except BackendError as e:
            logger.error(f"Failed to resolve chat {chat_id}: {e}")
            self.notifier.error("Failed to resolve chat")
            raise WriteFailed("Failed to resolve chat") from e

        resolved = chat.model_copy(update={
            "status": ChatStatus.RESOLVED,
            "updated_at": row.get("updated_at"),
        })
        self.chats.apply_fenced(ChangeType.UPDATE, resolved)
        self.notifier.success("Chat resolved successfully")
        return self.chats.get(chat_id)

    async def mark_messages_read(self, chat_id: str) -> int:
        """Mark the customer's messages in a chat as read."""
        self._require_chat(chat_id)
        try:
            rows = await self.backend.update_where(
                "chat_messages",
                {"chat_id": chat_id, "sender_type": SenderType.CUSTOMER.value, "read": False},
                {"read": True},
            )
        except BackendError as e:
            logger.error(f"Failed to mark messages read in chat {chat_id}: {e}")
            return 0
        transcript = self._transcript(chat_id)
        for row in rows:
            transcript.apply_fenced(ChangeType.UPDATE, self.rehydrator.decode("chat_messages", row))
        return len(rows)
