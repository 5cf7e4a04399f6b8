from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import relationship
import uuid
from chatcore.database import Base
from chatcore.utils.timeutils import utcnow


class Profile(Base):
    """Public user profile, the denormalized sender/participant snapshot source."""
    
    __tablename__ = "profiles"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=True)
    avatar_url = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    
    # Relationships
    messages = relationship("Message", back_populates="sender")
    
    def __repr__(self):
        return f"<Profile {self.username}>"
