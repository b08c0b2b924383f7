# src/routers/notification_router.py
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.dependencies.auth import get_current_user
from src.dependencies.db import get_session_dep
from src.models.notification import DeviceToken, Notification
from src.schemas.schedule_schema import DeviceTokenCreate, NotificationRead

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationList(BaseModel):
    notifications: List[NotificationRead]
    unread_count: int


class MarkRead(BaseModel):
    ids: Optional[List[uuid.UUID]] = None
    all: bool = False


@router.get("/", response_model=NotificationList)
async def list_notifications(
    unread: bool = False,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session_dep),
    current_user=Depends(get_current_user),
):
    q = select(Notification).where(Notification.user_id == current_user.id)
    if unread:
        q = q.where(Notification.read == False)  # noqa: E712
    q = q.order_by(Notification.created_at.desc()).limit(limit)
    res = await session.execute(q)
    notifications = res.scalars().all()

    count_q = select(func.count()).select_from(Notification).where(
        Notification.user_id == current_user.id, Notification.read == False  # noqa: E712
    )
    unread_count = (await session.execute(count_q)).scalar_one()
    return {"notifications": notifications, "unread_count": unread_count}


@router.patch("/read", response_model=dict)
async def mark_read(
    payload: MarkRead,
    session: AsyncSession = Depends(get_session_dep),
    current_user=Depends(get_current_user),
):
    stmt = update(Notification).where(Notification.user_id == current_user.id)
    if not payload.all:
        if not payload.ids:
            return {"message": "Nothing to update"}
        stmt = stmt.where(Notification.id.in_(payload.ids))
    await session.execute(stmt.values(read=True).execution_options(synchronize_session=False))
    await session.commit()
    return {"message": "Notifications marked as read"}


@router.post("/devices", response_model=dict)
async def register_device(
    payload: DeviceTokenCreate,
    session: AsyncSession = Depends(get_session_dep),
    current_user=Depends(get_current_user),
):
    # a token moves to whichever user registered it last
    res = await session.execute(select(DeviceToken).where(DeviceToken.token == payload.token))
    device = res.scalars().first()
    if device is None:
        device = DeviceToken(user_id=current_user.id, token=payload.token)
    else:
        device.user_id = current_user.id
    session.add(device)
    await session.commit()
    return {"message": "Token registered"}
