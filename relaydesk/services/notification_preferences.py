"""Per-user notification toggles. A user without a row gets every flag on."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.models import NotificationSetting, utcnow

logger = logging.getLogger(__name__)

# Key names expected by existing webhook consumers.
PAYLOAD_KEYS: dict[str, str] = {
    "new_ticket": "newTicket",
    "deleted_ticket": "deleted_ticket",
    "in_work_ticket": "in_work_ticket",
    "updated_ticket": "updatetTicket",
    "solved_ticket": "solvedTicket",
    "shared_workflow": "sharedWorkflow",
    "shared_prompt": "sharedPrompt",
    "role_change": "roleChange",
    "new_mail": "newMail",
}


@dataclass(frozen=True)
class NotificationPreferences:
    new_ticket: bool = True
    deleted_ticket: bool = True
    in_work_ticket: bool = True
    updated_ticket: bool = True
    solved_ticket: bool = True
    shared_workflow: bool = True
    shared_prompt: bool = True
    role_change: bool = True
    new_mail: bool = True

    @classmethod
    def from_row(cls, row: NotificationSetting) -> "NotificationPreferences":
        return cls(**{field.name: bool(getattr(row, field.name)) for field in fields(cls)})

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)

    def as_payload(self) -> dict[str, bool]:
        return {PAYLOAD_KEYS[name]: value for name, value in asdict(self).items()}


PREFERENCE_FIELDS: tuple[str, ...] = tuple(field.name for field in fields(NotificationPreferences))


async def get_preferences(session: AsyncSession, user_id: int | None) -> NotificationPreferences:
    if user_id is None:
        return NotificationPreferences()
    try:
        result = await session.execute(
            select(NotificationSetting).where(NotificationSetting.user_id == user_id)
        )
        row = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.warning(
            "Could not load notification settings for user %s; using defaults: %s",
            user_id,
            exc,
        )
        return NotificationPreferences()
    if row is None:
        return NotificationPreferences()
    return NotificationPreferences.from_row(row)


async def save_preferences(
    session: AsyncSession, user_id: int, updates: Mapping[str, Any]
) -> NotificationPreferences:
    """Create or update the user's row with the given flags."""

    result = await session.execute(
        select(NotificationSetting).where(NotificationSetting.user_id == user_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = NotificationSetting(user_id=user_id, **NotificationPreferences().as_dict())
        session.add(row)
    for name in PREFERENCE_FIELDS:
        if name in updates and updates[name] is not None:
            setattr(row, name, bool(updates[name]))
    row.updated_at = utcnow()
    await session.commit()
    await session.refresh(row)
    return NotificationPreferences.from_row(row)
