import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional, TypeVar

from pydantic import ValidationError

from chatcore.config import Settings, get_settings
from chatcore.events import ConversationMarkedRead, EventBus, MessageSent
from chatcore.exceptions import BackendError, EncryptionError, InputValidationError
from chatcore.schemas import (
    Conversation,
    ConversationRow,
    GroupConversation,
    GroupMember,
    Message,
    MessageCreate,
    MessageEdit,
    Participant,
    UserProfile,
)
from chatcore.services.encryption_service import MessageEncryptionService
from chatcore.services.message_repository import MessageRepository
from chatcore.utils.encryption import truncate_preview
from chatcore.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

C = TypeVar("C", bound=Conversation)


def sort_conversations(conversations: List[C]) -> List[C]:
    """Newest activity first; conversations without messages last, newest created first."""
    with_messages = [c for c in conversations if c.last_message_at is not None]
    without_messages = [c for c in conversations if c.last_message_at is None]
    with_messages.sort(key=lambda c: c.last_message_at, reverse=True)
    without_messages.sort(key=lambda c: c.created_at, reverse=True)
    return with_messages + without_messages


def _validation_message(error: ValidationError) -> str:
    return "; ".join(err["msg"] for err in error.errors())


class ConversationManager:
    """Business logic for conversations: aggregates, previews, unread counts, send/read/delete."""

    def __init__(
        self,
        repository: MessageRepository,
        encryption: MessageEncryptionService,
        events: EventBus,
        settings: Optional[Settings] = None
    ):
        self._repository = repository
        self._encryption = encryption
        self._events = events
        self._settings = settings or get_settings()

    # Conversation operations

    async def fetch_conversations(self, user_id: str) -> List[Conversation]:
        """Fetch the user's visible direct conversations with unread counts and decrypted previews."""
        logger.debug(f"Fetching conversations for user {user_id}")
        rows = await self._repository.fetch_user_conversations(user_id)
        conversations = sort_conversations([c for c in self._group_rows(rows) if not c.is_group])

        await asyncio.gather(*(self._enrich(conversation, user_id) for conversation in conversations))

        logger.info(f"Retrieved {len(conversations)} conversation(s) for user {user_id}")
        return conversations

    @staticmethod
    def _group_rows(rows: List[ConversationRow]) -> List[Conversation]:
        by_id: "OrderedDict[str, Conversation]" = OrderedDict()
        for row in rows:
            conversation = by_id.get(row.conversation_id)
            if conversation is None:
                conversation = Conversation(
                    id=row.conversation_id,
                    created_at=row.conversation_created_at,
                    updated_at=row.conversation_updated_at,
                    last_message_at=row.conversation_last_message_at,
                    is_group=row.conversation_is_group,
                    participants=[],
                )
                by_id[row.conversation_id] = conversation

            if row.participant_id and row.participant_user_id and row.participant_joined_at:
                user = None
                if row.user_username:
                    user = UserProfile(
                        id=row.participant_user_id,
                        username=row.user_username,
                        display_name=row.user_display_name,
                        avatar_url=row.user_avatar_url,
                        bio=row.user_bio,
                    )
                conversation.participants.append(Participant(
                    id=row.participant_id,
                    conversation_id=row.conversation_id,
                    user_id=row.participant_user_id,
                    joined_at=row.participant_joined_at,
                    last_read_at=row.participant_last_read_at,
                    user=user,
                ))
        return list(by_id.values())

    async def _enrich(self, conversation: Conversation, user_id: str) -> None:
        conversation.unread_count = await self._repository.get_unread_count(conversation.id, user_id)
        latest_content = await self._repository.fetch_latest_message(conversation.id)
        if latest_content is not None:
            conversation.last_message_preview = self._encryption.safe_decrypt_message_preview(latest_content)

    async def get_or_create_direct_conversation(self, current_user_id: str, other_user_id: str) -> str:
        return await self._repository.get_or_create_direct_conversation(current_user_id, other_user_id)

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> None:
        await self._repository.mark_conversation_as_read(conversation_id, user_id)
        self._events.publish(ConversationMarkedRead(conversation_id=conversation_id, user_id=user_id))

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        """Hide the conversation and its history for this user only."""
        await self._repository.delete_conversation_for_user(conversation_id, user_id)

    async def calculate_unread_conversations_count(self, user_id: str) -> int:
        """Number of conversations with at least one unread message (not a message total)."""
        try:
            rows = await self._repository.fetch_user_conversations(user_id)
        except BackendError as e:
            logger.warning(f"Unread conversations count for {user_id} unavailable: {e}")
            return 0

        conversation_ids = list(dict.fromkeys(row.conversation_id for row in rows))
        counts = await asyncio.gather(
            *(self._repository.get_unread_count(conversation_id, user_id) for conversation_id in conversation_ids)
        )
        return sum(1 for count in counts if count > 0)

    # Group conversation operations

    async def create_group_conversation(
        self,
        name: str,
        description: Optional[str] = None,
        member_ids: Optional[List[str]] = None,
        emoji: Optional[str] = None
    ) -> str:
        return await self._repository.create_group_chat(name, description, member_ids or [], emoji)

    async def fetch_group_conversations(self, user_id: str) -> List[GroupConversation]:
        """Fetch group conversations with decrypted previews and unread counts."""
        groups = sort_conversations(await self._repository.fetch_group_conversations(user_id))
        await asyncio.gather(*(self._enrich(group, user_id) for group in groups))
        return groups

    async def add_member_to_group(self, conversation_id: str, user_id: str) -> bool:
        return await self._repository.add_group_member(conversation_id, user_id)

    async def remove_member_from_group(self, conversation_id: str, user_id: str) -> bool:
        return await self._repository.remove_group_member(conversation_id, user_id)

    async def get_group_members(self, conversation_id: str) -> List[GroupMember]:
        return await self._repository.get_group_members(conversation_id)

    # Message operations

    async def fetch_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
        *,
        user_id: str
    ) -> List[Message]:
        if limit is None:
            limit = self._settings.DEFAULT_MESSAGE_PAGE_SIZE
        encrypted_messages = await self._repository.fetch_messages(
            conversation_id, limit, before, user_id=user_id
        )
        # One undecryptable message must not break the whole list
        return [
            message.model_copy(update={"content": self._encryption.safe_decrypt_message(message.content)})
            for message in encrypted_messages
        ]

    def _validate_content(self, content: str) -> None:
        if len(content) > self._settings.MAX_MESSAGE_LENGTH:
            raise InputValidationError(
                f"Message content exceeds {self._settings.MAX_MESSAGE_LENGTH} characters"
            )

    async def send_message(self, conversation_id: str, content: str, sender_id: str) -> Message:
        """Encrypt and store a message, then bring conversation state up to date.

        The inserted message is the durable fact. The bookkeeping that follows
        is best-effort: a failing step is logged and the rest still run.
        """
        try:
            MessageCreate(conversation_id=conversation_id, sender_id=sender_id, content=content)
        except ValidationError as e:
            raise InputValidationError(_validation_message(e)) from e
        self._validate_content(content)

        encrypted_content = self._encryption.encrypt_message(content)
        inserted = await self._repository.insert_message(conversation_id, sender_id, encrypted_content)

        preview = truncate_preview(content)
        steps = [
            ("update conversation metadata", lambda: self._repository.update_conversation(
                conversation_id, self._encryption.encrypt_message(preview), utcnow()
            )),
            ("ensure sender participation", lambda: self._repository.ensure_participation_exists(
                conversation_id, sender_id
            )),
            ("unhide conversation", lambda: self._repository.unhide_conversation_for_all_participants(
                conversation_id
            )),
            ("clear sender message cutoff", lambda: self._repository.clear_message_cutoff_for_user(
                conversation_id, sender_id
            )),
            ("mark read for sender", lambda: self.mark_conversation_as_read(conversation_id, sender_id)),
        ]
        for description, step in steps:
            try:
                await step()
            except (BackendError, EncryptionError) as e:
                logger.warning(f"Message {inserted.id} sent but failed to {description}: {e}")

        # Callers get back the plaintext they sent
        message = inserted.model_copy(update={"content": content})
        self._events.publish(MessageSent(message=message))
        logger.info(f"User {sender_id} sent message {message.id} to conversation {conversation_id}")
        return message

    async def edit_message(self, message_id: str, new_content: str) -> None:
        try:
            MessageEdit(message_id=message_id, content=new_content)
        except ValidationError as e:
            raise InputValidationError(_validation_message(e)) from e
        self._validate_content(new_content)

        encrypted_content = self._encryption.encrypt_message(new_content)
        await self._repository.update_message(message_id, encrypted_content)
        logger.info(f"Edited message {message_id}")

