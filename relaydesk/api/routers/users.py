from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import ADMIN_ROLE, APPROVED, require_admin, require_approved_user
from relaydesk.core.webhook_payloads import WebhookAction
from relaydesk.models import User, utcnow
from relaydesk.schemas import ApprovalStatus, ApprovalUpdate, RoleUpdate, UserProfileUpdate, UserRead
from relaydesk.services.webhook_notifications import notify_best_effort

router = APIRouter(tags=["Users"])

logger = logging.getLogger(__name__)

_APPROVAL_ACTIONS = {
    ApprovalStatus.APPROVED: WebhookAction.USER_APPROVED,
    ApprovalStatus.REJECTED: WebhookAction.USER_REJECTED,
}


async def _get_user_or_404(user_id: int, session: AsyncSession) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def _approved_admin_count(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(User)
        .where(User.role == ADMIN_ROLE, User.approval_status == APPROVED)
    )
    return result.scalar_one()


@router.get("/api/users/me", response_model=UserRead)
async def read_current_user(user: User = Depends(require_approved_user)) -> UserRead:
    return UserRead.model_validate(user)


@router.patch("/api/users/me", response_model=UserRead)
async def update_current_user(
    payload: UserProfileUpdate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    changes = payload.model_dump(exclude_unset=True)
    for field_name, value in changes.items():
        setattr(user, field_name, value)
    user.updated_at = utcnow()
    await session.commit()
    await session.refresh(user)
    return UserRead.model_validate(user)


@router.get("/api/admin/users", response_model=list[UserRead])
async def list_users(
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> list[UserRead]:
    result = await session.execute(select(User).order_by(User.created_at.asc(), User.id.asc()))
    return [UserRead.model_validate(user) for user in result.scalars().all()]


@router.patch("/api/admin/users/{user_id}/role", response_model=UserRead)
async def update_user_role(
    user_id: int,
    payload: RoleUpdate,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    target = await _get_user_or_404(user_id, session)
    if target.approval_status != APPROVED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only approved users can be assigned a role",
        )

    new_role = payload.role.value
    if (
        target.id == admin.id
        and new_role != ADMIN_ROLE
        and await _approved_admin_count(session) <= 1
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The last administrator cannot remove their own admin role",
        )

    previous_role = target.role
    target.role = new_role
    target.updated_at = utcnow()
    await session.commit()
    await session.refresh(target)
    response = UserRead.model_validate(target)

    result = await notify_best_effort(
        session,
        action=WebhookAction.ROLE_CHANGED,
        context={
            "actor": admin,
            "subject": target,
            "prev_role": previous_role,
            "current_role": new_role,
        },
        recipient=target,
    )
    logger.debug("Role change webhook for user %s: %s", target.id, result.as_dict())
    return response


@router.patch("/api/admin/users/{user_id}/approval", response_model=UserRead)
async def update_user_approval(
    user_id: int,
    payload: ApprovalUpdate,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> UserRead:
    target = await _get_user_or_404(user_id, session)
    if target.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Administrators cannot change their own approval status",
        )

    target.approval_status = payload.approval_status.value
    target.updated_at = utcnow()
    await session.commit()
    await session.refresh(target)
    response = UserRead.model_validate(target)

    action = _APPROVAL_ACTIONS.get(payload.approval_status)
    if action is None:
        logger.debug("User %s moved back to pending; no webhook sent.", target.id)
        return response

    result = await notify_best_effort(
        session,
        action=action,
        context={"actor": admin, "subject": target},
        recipient=target,
    )
    logger.debug("Approval webhook for user %s: %s", target.id, result.as_dict())
    return response
