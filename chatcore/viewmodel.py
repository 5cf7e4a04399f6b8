"""State holder for the conversation list screen.

Everything here runs on the event loop: cache writes happen synchronously
between awaits, so no locking is needed.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from chatcore.auth import AuthSession
from chatcore.config import Settings, get_settings
from chatcore.events import ConversationMarkedRead, MessageSent
from chatcore.exceptions import AuthenticationRequiredError, ChatCoreError
from chatcore.schemas import Conversation, GroupConversation, Message
from chatcore.services.facade import MessagingFacade
from chatcore.utils.encryption import truncate_preview
from chatcore.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SEND_FAILED_MESSAGE = "Failed to send message"


def format_timestamp(timestamp: datetime, now: Optional[datetime] = None) -> str:
    """Compact relative time for list rows: now, 5m, 3h, 2d, then "Jan 5"."""
    now = now or utcnow()
    seconds = (now - timestamp).total_seconds()
    if seconds < 60:
        return "now"
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h"
    if seconds < 7 * 86400:
        return f"{int(seconds // 86400)}d"
    return f"{timestamp.strftime('%b')} {timestamp.day}"


class MessagesViewModel:
    """Caches the conversation lists and applies optimistic updates."""

    def __init__(
        self,
        facade: MessagingFacade,
        auth: AuthSession,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._facade = facade
        self._auth = auth
        self._settings = settings or get_settings()
        self._clock = clock

        self.conversations: List[Conversation] = []
        self.group_conversations: List[GroupConversation] = []
        self.is_loading = False
        self.error_message: Optional[str] = None
        self.unread_conversations_count = 0

        self._load_task: Optional[asyncio.Task] = None
        self._deferred_refresh: Optional[asyncio.Task] = None
        self._last_refresh_at: Optional[float] = None

        self._unsubscribers = [
            facade.events.subscribe(ConversationMarkedRead, self._on_conversation_marked_read),
            facade.events.subscribe(MessageSent, self._on_message_sent),
            facade.subscribe_unread_count(self._on_unread_count),
        ]

    def _current_user_id(self) -> Optional[str]:
        try:
            return self._auth.require_user_id()
        except AuthenticationRequiredError as e:
            self.error_message = e.detail
            return None

    # Loading

    async def load_conversations(self) -> None:
        """Reload both lists; a newer load cancels this one."""
        await self._load(show_loading=True)

    async def load_conversations_if_needed(self) -> None:
        if not self.conversations and not self.group_conversations:
            await self.load_conversations()

    async def silent_refresh_conversations(self) -> None:
        await self._load(show_loading=False)

    async def refresh_conversations(self) -> None:
        """Reload unless the last refresh was too recent.

        An early request is deferred until the interval has passed. Any
        further early requests fold into that one pending refresh.
        """
        min_interval = self._settings.MIN_REFRESH_INTERVAL_SECONDS
        now = self._clock()
        if self._last_refresh_at is not None:
            elapsed = now - self._last_refresh_at
            if elapsed < min_interval:
                self._schedule_deferred_refresh(min_interval - elapsed)
                return
        self._last_refresh_at = now
        await self.load_conversations()

    def _schedule_deferred_refresh(self, delay: float) -> None:
        if self._deferred_refresh is not None and not self._deferred_refresh.done():
            logger.debug("Refresh already pending, request coalesced")
            return
        logger.debug(f"Refresh rate limited, deferring {delay:.2f}s")
        self._deferred_refresh = asyncio.get_running_loop().create_task(self._run_deferred_refresh(delay))

    async def _run_deferred_refresh(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._deferred_refresh = None
        self._last_refresh_at = self._clock()
        await self.load_conversations()

    async def _load(self, show_loading: bool) -> None:
        user_id = self._current_user_id()
        if user_id is None:
            return

        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        task = asyncio.get_running_loop().create_task(self._fetch_all(user_id))
        self._load_task = task
        if show_loading:
            self.is_loading = True

        try:
            conversations, groups = await task
        except asyncio.CancelledError:
            if task.cancelled() and self._load_task is not task:
                logger.debug("Conversation load superseded by a newer one")
                return
            raise
        except ChatCoreError as e:
            # Keep whatever is already on screen
            logger.warning(f"Failed to load conversations: {e}")
            self.error_message = e.detail
            return
        finally:
            if self._load_task is task:
                self._load_task = None
                self.is_loading = False

        self.conversations = conversations
        self.group_conversations = groups
        self.error_message = None
        logger.debug(f"Loaded {len(conversations)} conversation(s) and {len(groups)} group(s)")

    async def _fetch_all(self, user_id: str) -> Tuple[List[Conversation], List[GroupConversation]]:
        conversations, groups = await asyncio.gather(
            self._facade.fetch_conversations(user_id),
            self._facade.fetch_group_conversations(user_id),
        )
        return conversations, groups

    # Actions

    async def send_message(self, conversation_id: str, text: str) -> Optional[Message]:
        """Send and move the conversation to the top; None when sending failed."""
        user_id = self._current_user_id()
        if user_id is None:
            return None
        try:
            message = await self._facade.send_message(conversation_id, text, user_id)
        except ChatCoreError as e:
            logger.warning(f"Failed to send message to {conversation_id}: {e}")
            self.error_message = SEND_FAILED_MESSAGE
            return None

        self._apply_sent_message(message)
        return message

    async def create_new_conversation(self, other_user_id: str) -> Optional[str]:
        user_id = self._current_user_id()
        if user_id is None:
            return None
        try:
            conversation_id = await self._facade.get_or_create_direct_conversation(user_id, other_user_id)
        except ChatCoreError as e:
            logger.warning(f"Failed to start conversation with {other_user_id}: {e}")
            self.error_message = e.detail
            return None
        await self.load_conversations()
        return conversation_id

    async def delete_conversation(self, conversation_id: str) -> bool:
        user_id = self._current_user_id()
        if user_id is None:
            return False
        try:
            await self._facade.delete_conversation(conversation_id, user_id)
        except ChatCoreError as e:
            logger.warning(f"Failed to delete conversation {conversation_id}: {e}")
            self.error_message = e.detail
            return False

        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        self.group_conversations = [g for g in self.group_conversations if g.id != conversation_id]
        self._facade.update_unread_count_immediately()
        return True

    async def create_group_chat(
        self,
        name: str,
        description: Optional[str] = None,
        member_ids: Optional[List[str]] = None,
        emoji: Optional[str] = None
    ) -> Optional[str]:
        if self._current_user_id() is None:
            return None
        try:
            conversation_id = await self._facade.create_group_conversation(name, description, member_ids, emoji)
        except ChatCoreError as e:
            logger.warning(f"Failed to create group {name!r}: {e}")
            self.error_message = e.detail
            return None
        await self.load_conversations()
        return conversation_id

    async def add_group_member(self, conversation_id: str, user_id: str) -> bool:
        return await self._change_membership(self._facade.add_member_to_group, conversation_id, user_id)

    async def remove_group_member(self, conversation_id: str, user_id: str) -> bool:
        return await self._change_membership(self._facade.remove_member_from_group, conversation_id, user_id)

    async def _change_membership(self, operation, conversation_id: str, user_id: str) -> bool:
        if self._current_user_id() is None:
            return False
        try:
            changed = await operation(conversation_id, user_id)
        except ChatCoreError as e:
            logger.warning(f"Group membership change in {conversation_id} failed: {e}")
            self.error_message = e.detail
            return False
        if not changed:
            self.error_message = "Only group admins can change members"
            return False
        await self.silent_refresh_conversations()
        return True

    @staticmethod
    def format_timestamp(timestamp: datetime) -> str:
        return format_timestamp(timestamp)

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        for task in (self._load_task, self._deferred_refresh):
            if task is not None:
                task.cancel()

    # Event handlers

    def _on_unread_count(self, count: int) -> None:
        self.unread_conversations_count = count

    def _on_conversation_marked_read(self, event: ConversationMarkedRead) -> None:
        if event.user_id != self._auth.current_user_id:
            return
        for conversation in [*self.conversations, *self.group_conversations]:
            if conversation.id == event.conversation_id:
                conversation.unread_count = 0

    def _on_message_sent(self, event: MessageSent) -> None:
        self._apply_sent_message(event.message)

    def _apply_sent_message(self, message: Message) -> None:
        preview = truncate_preview(message.content)
        for cached in (self.conversations, self.group_conversations):
            for index, conversation in enumerate(cached):
                if conversation.id != message.conversation_id:
                    continue
                conversation.last_message_preview = preview
                conversation.last_message_at = message.created_at
                if isinstance(conversation, GroupConversation):
                    conversation.last_message_sender_id = message.sender_id
                    if message.sender is not None:
                        conversation.last_message_sender_username = message.sender.username
                if index:
                    cached.insert(0, cached.pop(index))
                break
