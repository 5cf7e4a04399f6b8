import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from chatcore import rpc
from chatcore.auth import AuthSession
from chatcore.exceptions import ChatCoreError, BackendError, InputValidationError, RecordNotFoundError
from chatcore.models import Conversation, ConversationParticipant, GroupMember, Message, Profile
from chatcore.schemas import (
    ConversationRow,
    GroupConversation,
    GroupMember as GroupMemberSchema,
    Message as MessageSchema,
)
from chatcore.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

EPOCH = datetime.min


def _validate_user_id(user_id: str) -> None:
    try:
        uuid.UUID(str(user_id))
    except ValueError:
        raise InputValidationError(f"Invalid user ID format: {user_id!r}")


class MessageRepository:
    """Data access for messages and conversations.

    No decryption and no business rules beyond what the backend enforces.
    Every method runs its store work in a worker thread with its own session,
    and store failures surface as BackendError.
    """

    def __init__(self, session_factory: sessionmaker, auth: AuthSession):
        self._session_factory = session_factory
        self._auth = auth

    async def _call(self, operation: Callable[..., T], *args) -> T:
        return await asyncio.to_thread(self._execute, operation, *args)

    def _execute(self, operation: Callable[..., T], *args) -> T:
        db: Session = self._session_factory()
        try:
            result = operation(db, *args)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Backend call {operation.__name__} failed: {e}")
            raise BackendError(f"{operation.__name__} failed", cause=e) from e
        except ChatCoreError:
            db.rollback()
            raise
        finally:
            db.close()

    # Message operations

    async def fetch_messages(
        self,
        conversation_id: str,
        limit: int = 50,
        before: Optional[datetime] = None,
        *,
        user_id: str
    ) -> List[MessageSchema]:
        """Fetch messages oldest-first, honoring the user's message cutoff."""
        return await self._call(self._fetch_messages, conversation_id, limit, before, user_id)

    @staticmethod
    def _fetch_messages(db: Session, conversation_id, limit, before, user_id) -> List[MessageSchema]:
        cutoff = db.query(ConversationParticipant.messages_hidden_since).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id
        ).scalar()

        query = db.query(Message).options(joinedload(Message.sender)).filter(
            Message.conversation_id == conversation_id
        )
        if before is not None:
            query = query.filter(Message.created_at < before)
        if cutoff is not None:
            query = query.filter(Message.created_at > cutoff)

        messages = query.order_by(desc(Message.created_at)).limit(limit).all()

        # Rows can come from a path that skipped the backend filter
        if cutoff is not None:
            messages = [m for m in messages if m.created_at > cutoff]

        # Reverse to chronological order
        messages.reverse()
        logger.debug(f"Fetched {len(messages)} message(s) for conversation {conversation_id} (cutoff={cutoff})")
        return [MessageSchema.model_validate(m) for m in messages]

    async def insert_message(self, conversation_id: str, sender_id: str, encrypted_content: str) -> MessageSchema:
        return await self._call(self._insert_message, conversation_id, sender_id, encrypted_content)

    @staticmethod
    def _insert_message(db: Session, conversation_id, sender_id, encrypted_content) -> MessageSchema:
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=encrypted_content
        )
        db.add(message)
        db.flush()
        db.refresh(message)
        logger.info(f"Inserted message {message.id} into conversation {conversation_id}")
        return MessageSchema.model_validate(message)

    async def update_message(self, message_id: str, new_encrypted_content: str) -> None:
        await self._call(self._update_message, message_id, new_encrypted_content)

    @staticmethod
    def _update_message(db: Session, message_id, new_encrypted_content) -> None:
        updated = db.query(Message).filter(Message.id == message_id).update(
            {"content": new_encrypted_content, "is_edited": True, "updated_at": utcnow()},
            synchronize_session=False
        )
        if not updated:
            raise RecordNotFoundError(f"Message {message_id} not found")

    async def fetch_latest_message(self, conversation_id: str) -> Optional[str]:
        """Encrypted content of the newest message, for previews."""
        return await self._call(self._fetch_latest_message, conversation_id)

    @staticmethod
    def _fetch_latest_message(db: Session, conversation_id) -> Optional[str]:
        row = db.query(Message.content).filter(
            Message.conversation_id == conversation_id
        ).order_by(desc(Message.created_at)).first()
        return row[0] if row else None

    # Conversation operations

    async def fetch_user_conversations(self, user_id: str) -> List[ConversationRow]:
        return await self._call(rpc.get_user_conversations, user_id)

    async def get_or_create_direct_conversation(self, current_user_id: str, other_user_id: str) -> str:
        _validate_user_id(current_user_id)
        _validate_user_id(other_user_id)
        if current_user_id.lower() == other_user_id.lower():
            raise InputValidationError("Cannot start a direct conversation with yourself")
        return await self._call(self._get_or_create_direct_conversation, current_user_id, other_user_id)

    @staticmethod
    def _get_or_create_direct_conversation(db: Session, current_user_id, other_user_id) -> str:
        for user_id in (current_user_id, other_user_id):
            if db.query(Profile.id).filter(Profile.id == user_id).first() is None:
                raise RecordNotFoundError(f"User profile not found: {user_id}")
        return rpc.get_or_create_direct_conversation(db, current_user_id, other_user_id)

    async def update_conversation(
        self,
        conversation_id: str,
        last_message_preview: str,
        last_message_at: datetime
    ) -> None:
        await self._call(self._update_conversation, conversation_id, last_message_preview, last_message_at)

    @staticmethod
    def _update_conversation(db: Session, conversation_id, last_message_preview, last_message_at) -> None:
        db.query(Conversation).filter(Conversation.id == conversation_id).update(
            {
                "last_message_preview": last_message_preview,
                "last_message_at": last_message_at,
                "updated_at": utcnow(),
            },
            synchronize_session=False
        )

    # Participant operations

    async def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        """Messages from others newer than the user's read cursor; 0 on any error."""
        try:
            return await self._call(self._get_unread_count, conversation_id, user_id)
        except Exception as e:
            logger.warning(f"Unread count for {user_id} in {conversation_id} unavailable: {e}")
            return 0

    @staticmethod
    def _get_unread_count(db: Session, conversation_id, user_id) -> int:
        participant = db.query(
            ConversationParticipant.last_read_at,
            ConversationParticipant.messages_hidden_since
        ).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id
        ).first()

        last_read_at = EPOCH
        if participant is not None:
            last_read_at = participant.last_read_at or EPOCH
            # Messages behind the user's cutoff cannot be unread
            if participant.messages_hidden_since and participant.messages_hidden_since > last_read_at:
                last_read_at = participant.messages_hidden_since

        count = db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,  # Don't count user's own messages as unread
            Message.created_at > last_read_at
        ).scalar()
        return count or 0

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> None:
        await self._call(self._mark_conversation_as_read, conversation_id, user_id)

    @staticmethod
    def _mark_conversation_as_read(db: Session, conversation_id, user_id) -> None:
        participant = db.query(ConversationParticipant).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id
        ).first()
        if participant is None:
            logger.debug(f"No participant row for {user_id} in {conversation_id}; nothing to mark read")
            return

        now = utcnow()
        if participant.last_read_at is None or now > participant.last_read_at:
            participant.last_read_at = now
        logger.debug(f"User {user_id} marked conversation {conversation_id} as read at {participant.last_read_at}")

    async def ensure_participation_exists(self, conversation_id: str, user_id: str) -> None:
        await self._call(self._ensure_participation_exists, conversation_id, user_id)

    @staticmethod
    def _ensure_participation_exists(db: Session, conversation_id, user_id) -> None:
        try:
            if rpc.ensure_participant(db, conversation_id, user_id):
                logger.info(f"Restored participation of {user_id} in {conversation_id}")
        except IntegrityError:
            # A concurrent caller inserted the same (conversation, user) row
            db.rollback()

    async def delete_conversation_for_user(self, conversation_id: str, user_id: str) -> None:
        """Soft delete: hide the conversation and everything sent so far, for this user only."""
        await self._call(self._delete_conversation_for_user, conversation_id, user_id)

    @staticmethod
    def _delete_conversation_for_user(db: Session, conversation_id, user_id) -> None:
        deletion_time = utcnow()
        db.query(ConversationParticipant).filter(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id
        ).update(
            {
                "hidden_for_user": True,
                "hidden_at": deletion_time,
                "messages_hidden_since": deletion_time,
            },
            synchronize_session=False
        )
        logger.info(f"Conversation {conversation_id} hidden for user {user_id} at {deletion_time}")

    async def unhide_conversation_for_all_participants(self, conversation_id: str) -> None:
        await self._call(rpc.unhide_conversation_for_all_participants, conversation_id)

    async def clear_message_cutoff_for_user(self, conversation_id: str, user_id: str) -> None:
        await self._call(rpc.clear_message_cutoff_for_user, conversation_id, user_id)

    # Group operations

    async def create_group_chat(
        self,
        name: str,
        description: Optional[str] = None,
        member_ids: Optional[List[str]] = None,
        emoji: Optional[str] = None
    ) -> str:
        caller_id = self._auth.require_user_id()
        member_ids = list(member_ids or [])
        for member_id in member_ids:
            _validate_user_id(member_id)
        return await self._call(rpc.create_group_chat, caller_id, name, description, member_ids, emoji)

    async def fetch_group_conversations(self, user_id: str) -> List[GroupConversation]:
        rows = await self._call(rpc.get_user_group_conversations, user_id)
        return [GroupConversation(**row) for row in rows]

    async def add_group_member(self, conversation_id: str, user_id: str) -> bool:
        caller_id = self._auth.require_user_id()
        _validate_user_id(user_id)
        return await self._call(rpc.add_group_member, caller_id, conversation_id, user_id)

    async def remove_group_member(self, conversation_id: str, user_id: str) -> bool:
        caller_id = self._auth.require_user_id()
        _validate_user_id(user_id)
        return await self._call(rpc.remove_group_member, caller_id, conversation_id, user_id)

    async def get_group_members(self, conversation_id: str) -> List[GroupMemberSchema]:
        return await self._call(self._get_group_members, conversation_id)

    @staticmethod
    def _get_group_members(db: Session, conversation_id) -> List[GroupMemberSchema]:
        members = db.query(GroupMember).options(joinedload(GroupMember.user)).filter(
            GroupMember.conversation_id == conversation_id
        ).order_by(GroupMember.joined_at).all()
        return [GroupMemberSchema.model_validate(m) for m in members]
