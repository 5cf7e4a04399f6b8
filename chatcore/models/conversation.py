from sqlalchemy import Column, String, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid
from chatcore.database import Base
from chatcore.utils.timeutils import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    """Conversation model for direct and group chats."""
    
    __tablename__ = "conversations"
    
    id = Column(String(36), primary_key=True, default=_uuid)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_message_at = Column(DateTime, nullable=True, index=True)
    last_message_preview = Column(Text, nullable=True)  # Encrypted preview
    
    # Group chat metadata
    is_group = Column(Boolean, default=False, nullable=False)
    group_name = Column(String(100), nullable=True)
    group_description = Column(Text, nullable=True)
    group_avatar_url = Column(Text, nullable=True)
    group_emoji = Column(String(16), nullable=True)
    created_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    
    # Sorted "userA:userB" pair, unique per direct conversation
    direct_key = Column(String(80), unique=True, nullable=True)
    
    # Relationships
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan"
    )
    members = relationship(
        "GroupMember",
        back_populates="conversation",
        cascade="all, delete-orphan"
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at"
    )
    
    def __repr__(self):
        return f"<Conversation {self.id} - {'Group' if self.is_group else 'Direct'}>"


class ConversationParticipant(Base):
    """A user's membership in a conversation with personal read and visibility state."""
    
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
    )
    
    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=utcnow)
    last_read_at = Column(DateTime, nullable=True)
    hidden_for_user = Column(Boolean, default=False, nullable=True)
    hidden_at = Column(DateTime, nullable=True)
    messages_hidden_since = Column(DateTime, nullable=True)
    
    # Relationships
    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("Profile")
    
    def __repr__(self):
        return f"<ConversationParticipant {self.user_id} in {self.conversation_id}>"


class GroupMember(Base):
    """Group membership with role; only admins manage members."""
    
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_group_member_conversation_user"),
    )
    
    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False, default="member")
    joined_at = Column(DateTime, default=utcnow)
    
    # Relationships
    conversation = relationship("Conversation", back_populates="members")
    user = relationship("Profile")
    
    def __repr__(self):
        return f"<GroupMember {self.user_id} ({self.role}) in {self.conversation_id}>"
