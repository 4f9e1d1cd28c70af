from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import require_approved_user
from relaydesk.models import User
from relaydesk.schemas import NotificationSettingsRead, NotificationSettingsUpdate
from relaydesk.services.notification_preferences import get_preferences, save_preferences

router = APIRouter(prefix="/api/notification-settings", tags=["Notification settings"])


@router.get("", response_model=NotificationSettingsRead)
async def read_notification_settings(
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> NotificationSettingsRead:
    preferences = await get_preferences(session, user.id)
    return NotificationSettingsRead(**preferences.as_dict())


@router.put("", response_model=NotificationSettingsRead)
async def update_notification_settings(
    payload: NotificationSettingsUpdate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> NotificationSettingsRead:
    preferences = await save_preferences(
        session, user.id, payload.model_dump(exclude_unset=True)
    )
    return NotificationSettingsRead(**preferences.as_dict())
