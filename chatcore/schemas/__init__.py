"""Pydantic schemas for rows and aggregates."""

from chatcore.schemas.user import UserProfile
from chatcore.schemas.message import Message, MessageCreate, MessageEdit
from chatcore.schemas.conversation import (
    Conversation,
    ConversationRow,
    GroupConversation,
    GroupMember,
    GroupRole,
    Participant,
)

__all__ = [
    "UserProfile",
    "Message",
    "MessageCreate",
    "MessageEdit",
    "Conversation",
    "ConversationRow",
    "GroupConversation",
    "GroupMember",
    "GroupRole",
    "Participant",
]
