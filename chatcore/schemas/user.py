"""User profile schemas."""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class UserProfile(BaseModel):
    """Denormalized profile snapshot attached to messages and participants."""
    id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True
    
    @property
    def profile_display_name(self) -> str:
        return self.display_name or self.username
