# src/models/enums.py
from enum import Enum


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class PostType(str, Enum):
    STORY = "STORY"  # rendered for manual download
    POST = "POST"  # auto-published to the Instagram feed


class Theme(str, Enum):
    SHINY_PURPLE = "SHINY_PURPLE"
    MANGO_JUICE = "MANGO_JUICE"
    OCEAN_BREEZE = "OCEAN_BREEZE"
    FOREST_GLOW = "FOREST_GLOW"
    SUNSET_VIBES = "SUNSET_VIBES"


class NotificationType(str, Enum):
    POST_READY = "POST_READY"
    POST_PUBLISHED = "POST_PUBLISHED"
    POST_FAILED = "POST_FAILED"
    REMINDER = "REMINDER"
