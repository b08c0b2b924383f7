# src/schemas/schedule_schema.py
from pydantic import BaseModel, Field
from typing import List, Optional
import uuid
from datetime import datetime

from src.models.enums import JobStatus, NotificationType, PostType, Theme


class ScheduleCreate(BaseModel):
    post_ids: List[uuid.UUID] = Field(min_length=1)
    scheduled_for: datetime
    theme: Optional[Theme] = None
    post_type: PostType = PostType.STORY
    preview_url: Optional[str] = None


class ScheduledJobRead(BaseModel):
    id: uuid.UUID
    post_id: uuid.UUID
    theme: Theme
    post_type: PostType
    scheduled_for: datetime
    status: JobStatus
    preview_url: Optional[str] = None
    image_url: Optional[str] = None
    media_id: Optional[str] = None
    permalink: Optional[str] = None
    published_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ScheduleResult(BaseModel):
    message: str
    jobs: List[ScheduledJobRead]


class DeviceTokenCreate(BaseModel):
    token: str = Field(min_length=1)


class NotificationRead(BaseModel):
    id: uuid.UUID
    type: NotificationType
    title: str
    body: str
    image_url: Optional[str] = None
    job_id: Optional[uuid.UUID] = None
    read: bool
    created_at: datetime

    model_config = {"from_attributes": True}
