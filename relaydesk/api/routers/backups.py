from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import require_approved_user
from relaydesk.core.webhook_payloads import WebhookAction
from relaydesk.models import Backup, BackupShare, Notification, User
from relaydesk.schemas import BackupCreate, BackupRead, BackupShareCreate, BackupShareRead, BackupType
from relaydesk.services.webhook_notifications import notify_best_effort

router = APIRouter(prefix="/api/backups", tags=["Backups"])

logger = logging.getLogger(__name__)

_SHARE_ACTIONS = {
    BackupType.N8N_WORKFLOW.value: WebhookAction.SHARED_WORKFLOW,
    BackupType.AI_PROMPT.value: WebhookAction.SHARED_PROMPT,
}

# Title, type and redirect of the in-app notice a share recipient receives.
_SHARE_NOTICES = {
    BackupType.N8N_WORKFLOW.value: ("N8N Workflow Shared", "shared_n8n_workflow", "/n8n-backups"),
    BackupType.AI_PROMPT.value: ("AI Prompt Shared", "shared_ai_prompt", "/ai-backups"),
}


async def _get_owned_backup(backup_id: int, user: User, session: AsyncSession) -> Backup:
    backup = await session.get(Backup, backup_id)
    if backup is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Backup not found")
    if backup.owner_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the owner can manage sharing for this backup",
        )
    return backup


@router.post("/", response_model=BackupRead, status_code=status.HTTP_201_CREATED)
async def create_backup(
    payload: BackupCreate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> BackupRead:
    backup = Backup(
        owner_id=user.id,
        title=payload.title,
        backup_type=payload.backup_type.value,
        description=payload.description,
        content=payload.content,
    )
    session.add(backup)
    await session.commit()
    await session.refresh(backup)
    return BackupRead.model_validate(backup)


@router.get("/", response_model=list[BackupRead])
async def list_backups(
    backup_type: BackupType | None = None,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> list[BackupRead]:
    shared_with_me = select(BackupShare.backup_id).where(BackupShare.recipient_id == user.id)
    statement = select(Backup).where(
        or_(Backup.owner_id == user.id, Backup.id.in_(shared_with_me))
    )
    if backup_type is not None:
        statement = statement.where(Backup.backup_type == backup_type.value)
    result = await session.execute(statement.order_by(Backup.created_at.desc(), Backup.id.desc()))
    return [BackupRead.model_validate(backup) for backup in result.scalars().all()]


@router.post(
    "/{backup_id}/share",
    response_model=BackupShareRead,
    status_code=status.HTTP_201_CREATED,
)
async def share_backup(
    backup_id: int,
    payload: BackupShareCreate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> BackupShareRead:
    backup = await _get_owned_backup(backup_id, user, session)

    result = await session.execute(select(User).where(User.email == payload.recipient_email))
    recipient = result.scalar_one_or_none()
    if recipient is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipient not found")
    if recipient.id == user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot share a backup with yourself",
        )

    existing = await session.execute(
        select(BackupShare.id).where(
            BackupShare.backup_id == backup.id,
            BackupShare.recipient_id == recipient.id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Backup already shared with this user",
        )

    share = BackupShare(
        backup_id=backup.id,
        owner_id=user.id,
        recipient_id=recipient.id,
        access_role=payload.access_role.value,
    )
    title, notice_type, redirect_path = _SHARE_NOTICES[backup.backup_type]
    session.add(share)
    session.add(
        Notification(
            user_id=recipient.id,
            title=title,
            message=f"{user.full_name or user.email} shared \"{backup.title}\" with you",
            type=notice_type,
            redirect_path=redirect_path,
        )
    )
    await session.commit()
    await session.refresh(share)
    response = BackupShareRead.model_validate(share)

    dispatch = await notify_best_effort(
        session,
        action=_SHARE_ACTIONS[backup.backup_type],
        context={
            "actor": user,
            "subject": recipient,
            "backup": backup,
            "access_role": share.access_role,
        },
        recipient=recipient,
    )
    logger.debug("Share webhook for backup %s: %s", backup.id, dispatch.as_dict())
    return response


@router.get("/{backup_id}/shares", response_model=list[BackupShareRead])
async def list_backup_shares(
    backup_id: int,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> list[BackupShareRead]:
    backup = await _get_owned_backup(backup_id, user, session)
    result = await session.execute(
        select(BackupShare)
        .where(BackupShare.backup_id == backup.id)
        .order_by(BackupShare.shared_at.asc(), BackupShare.id.asc())
    )
    return [BackupShareRead.model_validate(share) for share in result.scalars().all()]


@router.delete(
    "/{backup_id}/shares/{recipient_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def unshare_backup(
    backup_id: int,
    recipient_id: int,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> Response:
    backup = await _get_owned_backup(backup_id, user, session)
    result = await session.execute(
        select(BackupShare).where(
            BackupShare.backup_id == backup.id,
            BackupShare.recipient_id == recipient_id,
        )
    )
    share = result.scalar_one_or_none()
    if share is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Share not found")
    await session.delete(share)
    await session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
