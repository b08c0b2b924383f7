# src/models/notification.py
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
import uuid

from src.models.enums import NotificationType
from src.utils import utcnow


class DeviceToken(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    token: str = Field(unique=True)
    created_at: datetime = Field(default_factory=utcnow)


class Notification(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    type: NotificationType
    title: str
    body: str
    image_url: Optional[str] = None
    job_id: Optional[uuid.UUID] = Field(default=None, index=True)
    read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
