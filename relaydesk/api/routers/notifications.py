from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import require_approved_user
from relaydesk.models import Notification, User
from relaydesk.schemas import NotificationRead

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    unread_only: bool = Query(default=False),
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> list[NotificationRead]:
    statement = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        statement = statement.where(Notification.is_read.is_(False))
    result = await session.execute(
        statement.order_by(Notification.created_at.desc(), Notification.id.desc())
    )
    return [NotificationRead.model_validate(item) for item in result.scalars().all()]


@router.patch("/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> NotificationRead:
    notification = await session.get(Notification, notification_id)
    if notification is None or notification.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    notification.is_read = True
    await session.commit()
    await session.refresh(notification)
    return NotificationRead.model_validate(notification)
