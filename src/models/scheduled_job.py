# src/models/scheduled_job.py
from sqlmodel import SQLModel, Field, Column
from typing import Optional
import uuid
from datetime import datetime
from sqlalchemy import String

from src.models.enums import JobStatus, PostType, Theme
from src.utils import utcnow


def active_key_for(user_id, post_id) -> str:
    return f"{user_id}:{post_id}"


class ScheduledJob(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    post_id: uuid.UUID = Field(foreign_key="sourcepost.id", index=True)
    theme: Theme = Field(default=Theme.SHINY_PURPLE)
    post_type: PostType = Field(default=PostType.STORY)
    scheduled_for: datetime = Field(index=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    # "{user_id}:{post_id}" while PENDING/PROCESSING, NULL otherwise
    active_key: Optional[str] = Field(default=None, sa_column=Column(String, unique=True, nullable=True))

    preview_url: Optional[str] = None
    image_url: Optional[str] = None
    image_id: Optional[str] = None
    media_id: Optional[str] = None  # Instagram media id, POST only
    permalink: Optional[str] = None
    published_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None  # story marked as posted by hand
    notified_at: Optional[datetime] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def queue_key(self) -> str:
        return f"render-{self.id}"
