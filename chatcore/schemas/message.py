"""Message-related Pydantic schemas."""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional
from chatcore.schemas.user import UserProfile


class MessageBase(BaseModel):
    """Base message schema."""
    content: str = Field(..., min_length=1)  # Upper bound comes from Settings.MAX_MESSAGE_LENGTH
    
    @field_validator('content')
    @classmethod
    def content_not_blank(cls, v):
        # Content is encrypted verbatim, so it is checked but never stripped
        if not v.strip():
            raise ValueError('Message content cannot be empty')
        return v


class MessageCreate(MessageBase):
    """Schema for sending a message."""
    conversation_id: str
    sender_id: str


class MessageEdit(MessageBase):
    """Schema for editing a message."""
    message_id: str


class Message(BaseModel):
    """Message as seen by callers; content is plaintext after decryption."""
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    updated_at: datetime
    is_edited: bool = False
    is_deleted: bool = False
    sender: Optional[UserProfile] = None
    
    class Config:
        from_attributes = True
