# src/routers/schedule_router.py
import uuid
from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.dependencies.auth import get_current_user
from src.dependencies.services import get_schedule_service
from src.exceptions import ConflictError, InvalidStateError, JobNotFoundError, SchedulerError, ValidationError
from src.models.enums import JobStatus
from src.schemas.schedule_schema import ScheduleCreate, ScheduledJobRead, ScheduleResult
from src.services.schedule_service import ScheduleService

router = APIRouter(prefix="/schedule", tags=["schedule"])


def _raise_http(exc: SchedulerError) -> NoReturn:
    if isinstance(exc, JobNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (ValidationError, InvalidStateError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/", response_model=List[ScheduledJobRead])
async def list_scheduled(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    svc: ScheduleService = Depends(get_schedule_service),
    current_user=Depends(get_current_user),
):
    return await svc.list_jobs(current_user.id, status_filter)


@router.post("/", response_model=ScheduleResult, status_code=status.HTTP_201_CREATED)
async def create_scheduled(
    payload: ScheduleCreate,
    svc: ScheduleService = Depends(get_schedule_service),
    current_user=Depends(get_current_user),
):
    try:
        if len(payload.post_ids) == 1:
            jobs = [
                await svc.schedule_post(
                    current_user.id,
                    payload.post_ids[0],
                    payload.scheduled_for,
                    theme=payload.theme,
                    post_type=payload.post_type,
                    preview_url=payload.preview_url,
                )
            ]
        else:
            jobs = await svc.schedule_posts(
                current_user.id,
                payload.post_ids,
                payload.scheduled_for,
                theme=payload.theme,
                post_type=payload.post_type,
                preview_url=payload.preview_url,
            )
    except SchedulerError as exc:
        _raise_http(exc)
    return {"message": f"Scheduled {len(jobs)} post(s)", "jobs": jobs}


@router.delete("/{job_id}", response_model=dict)
async def cancel_scheduled(
    job_id: uuid.UUID,
    svc: ScheduleService = Depends(get_schedule_service),
    current_user=Depends(get_current_user),
):
    try:
        await svc.cancel_job(job_id, user_id=current_user.id)
    except SchedulerError as exc:
        _raise_http(exc)
    return {"message": "Post cancelled"}


@router.post("/{job_id}/retry", response_model=ScheduledJobRead)
async def retry_scheduled(
    job_id: uuid.UUID,
    svc: ScheduleService = Depends(get_schedule_service),
    current_user=Depends(get_current_user),
):
    try:
        return await svc.retry_job(job_id, user_id=current_user.id)
    except SchedulerError as exc:
        _raise_http(exc)


@router.post("/{job_id}/mark-posted", response_model=ScheduledJobRead)
async def mark_posted(
    job_id: uuid.UUID,
    svc: ScheduleService = Depends(get_schedule_service),
    current_user=Depends(get_current_user),
):
    try:
        return await svc.mark_manually_posted(job_id, user_id=current_user.id)
    except SchedulerError as exc:
        _raise_http(exc)


@router.post("/{job_id}/complete", response_model=ScheduledJobRead)
async def complete_from_preview(
    job_id: uuid.UUID,
    svc: ScheduleService = Depends(get_schedule_service),
    current_user=Depends(get_current_user),
):
    try:
        return await svc.complete_with_preview(job_id, user_id=current_user.id)
    except SchedulerError as exc:
        _raise_http(exc)
