"""Database models."""

from chatcore.models.profile import Profile
from chatcore.models.conversation import Conversation, ConversationParticipant, GroupMember
from chatcore.models.message import Message

__all__ = [
    "Profile",
    "Conversation",
    "ConversationParticipant",
    "GroupMember",
    "Message",
]
