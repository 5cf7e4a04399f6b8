import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from chatcore.auth import AuthSession
from chatcore.config import Settings, configure_logging, get_settings
from chatcore.database import create_db_engine, create_session_factory, init_db
from chatcore.events import EventBus
from chatcore.schemas import Conversation, GroupConversation, GroupMember, Message
from chatcore.services.conversation_manager import ConversationManager
from chatcore.services.encryption_service import MessageEncryptionService
from chatcore.services.message_repository import MessageRepository
from chatcore.services.realtime import PollingTrigger, RealtimeSyncManager, UpdateTrigger
from chatcore.utils.keystore import FileKeyStore, KeyStore

logger = logging.getLogger(__name__)


class MessagingFacade:
    """Single entry point for the presentation layer.

    Composition runs one way only: repository, then encryption, then the
    conversation manager built on both, then the realtime manager built on
    the conversation manager.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        key_store: KeyStore,
        auth: AuthSession,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        update_trigger: Optional[UpdateTrigger] = None
    ):
        self.settings = settings or get_settings()
        self.auth = auth
        self.events = events or EventBus()

        self.repository = MessageRepository(session_factory, auth)
        self.encryption = MessageEncryptionService(key_store)
        self.conversations = ConversationManager(self.repository, self.encryption, self.events, self.settings)
        self.realtime = RealtimeSyncManager(
            self.conversations,
            auth,
            update_trigger or PollingTrigger(self.settings.UNREAD_POLL_INTERVAL_SECONDS)
        )

    @classmethod
    def from_settings(cls, settings: Settings, auth: AuthSession) -> "MessagingFacade":
        """Build the store, tables and on-disk key store described by the settings."""
        configure_logging(settings)
        engine = create_db_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        init_db(engine)
        key_dir = Path(settings.KEY_STORE_DIR)
        if auth.current_user_id:
            key_dir = key_dir / auth.current_user_id
        logger.info(f"Messaging system ready ({settings.APP_NAME}, keys in {key_dir})")
        return cls(create_session_factory(engine), FileKeyStore(key_dir), auth, settings=settings)

    # Realtime state

    @property
    def unread_conversations_count(self) -> int:
        return self.realtime.unread_conversations_count

    def subscribe_unread_count(self, observer: Callable[[int], None]) -> Callable[[], None]:
        return self.realtime.subscribe(observer)

    def update_unread_count_immediately(self):
        return self.realtime.update_unread_count_immediately()

    def close(self) -> None:
        self.realtime.close()

    # Conversations

    async def fetch_conversations(self, user_id: str) -> List[Conversation]:
        return await self.conversations.fetch_conversations(user_id)

    async def get_or_create_direct_conversation(self, current_user_id: str, other_user_id: str) -> str:
        return await self.conversations.get_or_create_direct_conversation(current_user_id, other_user_id)

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> None:
        await self.conversations.mark_conversation_as_read(conversation_id, user_id)
        self.realtime.update_unread_count_immediately()

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        await self.conversations.delete_conversation(conversation_id, user_id)

    async def calculate_unread_conversations_count(self, user_id: str) -> int:
        return await self.conversations.calculate_unread_conversations_count(user_id)

    # Messages

    async def fetch_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
        *,
        user_id: str
    ) -> List[Message]:
        return await self.conversations.fetch_messages(conversation_id, limit, before, user_id=user_id)

    async def send_message(self, conversation_id: str, content: str, sender_id: str) -> Message:
        message = await self.conversations.send_message(conversation_id, content, sender_id)
        self.realtime.update_unread_count_immediately()
        return message

    async def edit_message(self, message_id: str, new_content: str) -> None:
        await self.conversations.edit_message(message_id, new_content)

    # Groups

    async def create_group_conversation(
        self,
        name: str,
        description: Optional[str] = None,
        member_ids: Optional[List[str]] = None,
        emoji: Optional[str] = None
    ) -> str:
        return await self.conversations.create_group_conversation(name, description, member_ids, emoji)

    async def fetch_group_conversations(self, user_id: str) -> List[GroupConversation]:
        return await self.conversations.fetch_group_conversations(user_id)

    async def add_member_to_group(self, conversation_id: str, user_id: str) -> bool:
        return await self.conversations.add_member_to_group(conversation_id, user_id)

    async def remove_member_from_group(self, conversation_id: str, user_id: str) -> bool:
        return await self.conversations.remove_member_from_group(conversation_id, user_id)

    async def get_group_members(self, conversation_id: str) -> List[GroupMember]:
        return await self.conversations.get_group_members(conversation_id)
