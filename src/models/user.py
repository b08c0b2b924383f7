# src/models/user.py
from sqlmodel import SQLModel, Field, Column
from typing import Optional
from datetime import datetime
import uuid
from sqlalchemy import String

from src.utils import utcnow


class User(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    email: Optional[str] = Field(default=None, sa_column=Column(String, unique=True, index=True, nullable=True))
    username: str = Field(sa_column=Column(String, unique=True, index=True, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
