from __future__ import annotations

import logging
import uuid
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import require_approved_user
from relaydesk.core.webhook_payloads import WebhookAction
from relaydesk.models import Mail, User
from relaydesk.schemas import MailCreate, MailRead
from relaydesk.services.webhook_notifications import notify_best_effort

router = APIRouter(prefix="/api/mails", tags=["Mail"])

logger = logging.getLogger(__name__)


async def _find_recipient(email: str, session: AsyncSession) -> User:
    result = await session.execute(select(User).where(User.email == email))
    recipient = result.scalar_one_or_none()
    if recipient is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipient not found")
    return recipient


async def _thread_for_reply(reply_to_mail_id: int | None, session: AsyncSession) -> str:
    if reply_to_mail_id is not None:
        original = await session.get(Mail, reply_to_mail_id)
        if original is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Mail being replied to was not found",
            )
        if original.thread_id:
            return original.thread_id
    return uuid.uuid4().hex


@router.post("/", response_model=MailRead, status_code=status.HTTP_201_CREATED)
async def send_mail(
    payload: MailCreate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> MailRead:
    if not payload.is_draft and not payload.recipient_email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A recipient is required unless the mail is a draft",
        )

    recipient = None
    if payload.recipient_email:
        recipient = await _find_recipient(payload.recipient_email, session)

    mail = Mail(
        sender_id=user.id,
        recipient_id=recipient.id if recipient is not None else None,
        subject=payload.subject,
        body=payload.body,
        is_draft=payload.is_draft,
        reply_to_mail_id=payload.reply_to_mail_id,
        thread_id=await _thread_for_reply(payload.reply_to_mail_id, session),
    )
    session.add(mail)
    await session.commit()
    await session.refresh(mail)
    response = MailRead.model_validate(mail)

    if mail.is_draft or recipient is None:
        logger.debug("Mail %s saved as draft; no webhook sent.", mail.id)
        return response

    result = await notify_best_effort(
        session,
        action=WebhookAction.NEW_MAIL,
        context={"actor": user, "subject": recipient, "mail": mail},
        recipient=recipient,
    )
    logger.debug("New mail webhook for mail %s: %s", mail.id, result.as_dict())
    return response


@router.get("/", response_model=list[MailRead])
async def list_mails(
    folder: Literal["inbox", "sent", "drafts"] = Query(default="inbox"),
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> list[MailRead]:
    statement = select(Mail)
    if folder == "inbox":
        statement = statement.where(Mail.recipient_id == user.id, Mail.is_draft.is_(False))
    elif folder == "sent":
        statement = statement.where(Mail.sender_id == user.id, Mail.is_draft.is_(False))
    else:
        statement = statement.where(Mail.sender_id == user.id, Mail.is_draft.is_(True))
    result = await session.execute(statement.order_by(Mail.created_at.desc(), Mail.id.desc()))
    return [MailRead.model_validate(mail) for mail in result.scalars().all()]


@router.patch("/{mail_id}/read", response_model=MailRead)
async def mark_mail_read(
    mail_id: int,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> MailRead:
    mail = await session.get(Mail, mail_id)
    if mail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mail not found")
    if mail.recipient_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the recipient can mark a mail as read",
        )
    mail.is_read = True
    await session.commit()
    await session.refresh(mail)
    return MailRead.model_validate(mail)
