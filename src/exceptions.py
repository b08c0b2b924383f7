# src/exceptions.py
"""
Exception hierarchy for the scheduling pipeline.

    SchedulerError
    +-- ValidationError          bad input at schedule time, never enqueued
    +-- ConflictError            duplicate active job / concurrent claim loss
    +-- InvalidStateError        operation not allowed from the job's status
    +-- JobNotFoundError         also UnrecoverableJobError (queue will not retry)
    +-- RenderError
    +-- UploadError
    +-- NotificationError
    +-- PublishError
        +-- ReconnectRequiredError
        +-- InstagramAPIError
        +-- PublishTimeoutError
        +-- ContainerStateError
        +-- TokenRefreshError
"""
from typing import Optional


class SchedulerError(Exception):
    pass


class UnrecoverableJobError(SchedulerError):
    """Raised from a job handler when retrying cannot help."""


class ValidationError(SchedulerError, ValueError):
    pass


class ConflictError(SchedulerError):
    pass


class InvalidStateError(SchedulerError):
    pass


class JobNotFoundError(UnrecoverableJobError, LookupError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Scheduled job {job_id} not found")


class RenderError(SchedulerError):
    pass


class UploadError(SchedulerError):
    pass


class NotificationError(SchedulerError):
    pass


class PublishError(SchedulerError):
    pass


class ReconnectRequiredError(PublishError):
    """The stored Instagram token has expired; the user must reconnect."""


class InstagramAPIError(PublishError):
    def __init__(self, message: str, code: Optional[int] = None):
        self.api_message = message
        self.code = code
        super().__init__(f"Instagram API error: {message} (code: {code})")


class PublishTimeoutError(PublishError):
    pass


class ContainerStateError(PublishError):
    def __init__(self, status_code: str, message: str):
        self.status_code = status_code
        super().__init__(message)


class TokenRefreshError(PublishError):
    pass
