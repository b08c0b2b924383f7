# src/models/post.py
from sqlmodel import SQLModel, Field
from typing import Optional
import uuid
from datetime import datetime

from src.utils import utcnow


class SourcePost(SQLModel, table=True):
    """A social post imported for the user; the content that gets rendered."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    text: str
    author_name: str
    author_username: str
    author_image: Optional[str] = None  # avatar url
    posted_at: Optional[datetime] = None  # creation time on the source platform
    created_at: datetime = Field(default_factory=utcnow)
