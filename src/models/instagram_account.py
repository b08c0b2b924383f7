# src/models/instagram_account.py
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
import uuid

from src.utils import utcnow


class InstagramAccount(SQLModel, table=True):
    """Long-lived Instagram publishing credential, one per user."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True, unique=True)
    ig_user_id: str
    username: Optional[str] = None
    access_token_enc: str
    token_expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.token_expires_at
