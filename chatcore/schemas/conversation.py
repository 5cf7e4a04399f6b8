"""Conversation-related Pydantic schemas."""

from enum import Enum
from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List
from chatcore.schemas.user import UserProfile


class Participant(BaseModel):
    """A user's membership record with personal read/visibility state."""
    id: str
    conversation_id: str
    user_id: str
    joined_at: datetime
    last_read_at: Optional[datetime] = None
    hidden_for_user: Optional[bool] = None
    hidden_at: Optional[datetime] = None
    messages_hidden_since: Optional[datetime] = None
    user: Optional[UserProfile] = None
    
    class Config:
        from_attributes = True


class ConversationRow(BaseModel):
    """Flat row from get_user_conversations: one per (conversation, participant)."""
    conversation_id: str
    conversation_created_at: datetime
    conversation_updated_at: datetime
    conversation_last_message_at: Optional[datetime] = None
    conversation_is_group: bool = False
    participant_id: Optional[str] = None
    participant_user_id: Optional[str] = None
    participant_joined_at: Optional[datetime] = None
    participant_last_read_at: Optional[datetime] = None
    user_username: Optional[str] = None
    user_display_name: Optional[str] = None
    user_avatar_url: Optional[str] = None
    user_bio: Optional[str] = None


class Conversation(BaseModel):
    """Conversation aggregate for one viewing user."""
    id: str
    created_at: datetime
    updated_at: datetime
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    is_group: bool = False
    participants: List[Participant] = []
    unread_count: int = 0
    
    class Config:
        from_attributes = True
    
    def _other_participants(self, current_user_id: str) -> List[Participant]:
        current = current_user_id.lower()
        return [p for p in self.participants if p.user_id.lower() != current]
    
    def other_participant(self, current_user_id: Optional[str]) -> Optional[UserProfile]:
        """Profile of the first participant that is not the current user."""
        if not current_user_id:
            return None
        others = self._other_participants(current_user_id)
        return others[0].user if others else None
    
    def display_name(self, current_user_id: Optional[str]) -> str:
        if not current_user_id:
            return "Unknown"
        if not self.participants:
            return "Loading..."
        
        others = self._other_participants(current_user_id)
        if not others:
            return "Unknown"
        
        if len(others) == 1:
            user = others[0].user
            return user.profile_display_name if user else "User"
        
        names = [p.user.profile_display_name if p.user else "User" for p in others]
        if len(names) <= 3:
            return ", ".join(names)
        return f"{', '.join(names[:2])} +{len(names) - 2} others"
    
    def display_avatar(self, current_user_id: Optional[str]) -> Optional[str]:
        if not current_user_id:
            return None
        others = self._other_participants(current_user_id)
        if others and others[0].user:
            return others[0].user.avatar_url
        return None
    
    @property
    def display_last_message_preview(self) -> str:
        if not self.last_message_preview:
            return "Start a conversation"
        if len(self.last_message_preview) <= 15:
            return self.last_message_preview
        return self.last_message_preview[:15] + "..."


class GroupConversation(Conversation):
    """Group variant with group metadata and last-sender attribution."""
    is_group: bool = True
    group_name: Optional[str] = None
    group_description: Optional[str] = None
    group_avatar_url: Optional[str] = None
    group_emoji: Optional[str] = None
    created_by: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    last_message_sender_username: Optional[str] = None
    
    def display_name(self, current_user_id: Optional[str] = None) -> str:
        return self.group_name or "Group Chat"
    
    @property
    def display_last_message_preview(self) -> str:
        if not self.last_message_preview:
            return "No messages yet"
        if self.last_message_sender_username:
            return f"{self.last_message_sender_username}: {self.last_message_preview}"
        return self.last_message_preview


class GroupRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"
    
    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class GroupMember(BaseModel):
    id: str
    conversation_id: str
    user_id: str
    role: GroupRole
    joined_at: datetime
    user: Optional[UserProfile] = None
    
    class Config:
        from_attributes = True
