from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.db import get_session
from relaydesk.core.security import ADMIN_ROLE, require_approved_user
from relaydesk.core.webhook_payloads import WebhookAction
from relaydesk.models import Ticket, User, utcnow
from relaydesk.schemas import (
    TicketComplete,
    TicketCreate,
    TicketEdit,
    TicketRead,
    TicketStatus,
    TicketUpdate,
)
from relaydesk.services.webhook_notifications import notify_best_effort

router = APIRouter(prefix="/api/tickets", tags=["Tickets"])

logger = logging.getLogger(__name__)


async def _get_ticket_or_404(ticket_id: int, session: AsyncSession) -> Ticket:
    ticket = await session.get(Ticket, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ticket not found")
    return ticket


def _ensure_can_access(ticket: Ticket, user: User) -> None:
    if user.role == ADMIN_ROLE:
        return
    if user.id in {ticket.created_by, ticket.assigned_to}:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this ticket")


async def _ensure_assignee_exists(user_id: int | None, session: AsyncSession) -> None:
    if user_id is None:
        return
    if await session.get(User, user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Assigned user does not exist",
        )


def _ticket_snapshot(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "details": ticket.details,
        "urgency": ticket.urgency,
        "status": ticket.status,
        "deadline": ticket.deadline,
    }


async def _notify_ticket_event(
    session: AsyncSession,
    *,
    action: WebhookAction,
    ticket: dict[str, Any],
    created_by: int,
    assigned_to: int | None,
    actor: User,
) -> None:
    try:
        creator = await session.get(User, created_by)
        worker = await session.get(User, assigned_to) if assigned_to is not None else None
    except SQLAlchemyError as exc:
        logger.warning("Could not load ticket participants for webhook: %s", exc)
        creator = worker = None
    recipient = worker or creator
    result = await notify_best_effort(
        session,
        action=action,
        context={
            "actor": actor,
            "subject": recipient,
            "ticket": ticket,
            "creator": creator,
            "worker": worker,
        },
        recipient=recipient,
    )
    logger.debug("Ticket %s webhook '%s' result: %s", ticket["id"], action.value, result.as_dict())


def _update_action(previous_status: str, new_status: str | None) -> WebhookAction | None:
    """Pick the webhook for a ticket update, or ``None`` when nothing changed."""

    if new_status == TicketStatus.IN_PROGRESS.value:
        if previous_status == TicketStatus.IN_PROGRESS.value:
            return None
        return WebhookAction.IN_WORK
    if new_status == TicketStatus.COMPLETED.value and previous_status != TicketStatus.COMPLETED.value:
        return WebhookAction.SOLVED
    return WebhookAction.UPDATED


@router.post("/", response_model=TicketRead, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> TicketRead:
    await _ensure_assignee_exists(payload.assigned_to, session)
    ticket = Ticket(
        title=payload.title,
        details=payload.details,
        urgency=payload.urgency.value,
        deadline=payload.deadline,
        assigned_to=payload.assigned_to,
        created_by=user.id,
    )
    session.add(ticket)
    await session.commit()
    await session.refresh(ticket)
    response = TicketRead.model_validate(ticket)

    await _notify_ticket_event(
        session,
        action=WebhookAction.TICKET_CREATED,
        ticket=_ticket_snapshot(ticket),
        created_by=ticket.created_by,
        assigned_to=ticket.assigned_to,
        actor=user,
    )
    return response


@router.get("/", response_model=list[TicketRead])
async def list_tickets(
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> list[TicketRead]:
    statement = select(Ticket).order_by(Ticket.created_at.desc(), Ticket.id.desc())
    if user.role != ADMIN_ROLE:
        statement = statement.where(
            or_(Ticket.created_by == user.id, Ticket.assigned_to == user.id)
        )
    result = await session.execute(statement)
    return [TicketRead.model_validate(ticket) for ticket in result.scalars().all()]


@router.get("/mine", response_model=list[TicketRead])
async def list_my_tickets(
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> list[TicketRead]:
    result = await session.execute(
        select(Ticket)
        .where(Ticket.assigned_to == user.id)
        .order_by(Ticket.created_at.desc(), Ticket.id.desc())
    )
    return [TicketRead.model_validate(ticket) for ticket in result.scalars().all()]


@router.get("/{ticket_id}", response_model=TicketRead)
async def get_ticket(
    ticket_id: int,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> TicketRead:
    ticket = await _get_ticket_or_404(ticket_id, session)
    _ensure_can_access(ticket, user)
    return TicketRead.model_validate(ticket)


@router.patch("/{ticket_id}", response_model=TicketRead)
async def update_ticket(
    ticket_id: int,
    payload: TicketUpdate,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> TicketRead:
    ticket = await _get_ticket_or_404(ticket_id, session)
    _ensure_can_access(ticket, user)

    changes = payload.model_dump(exclude_unset=True, mode="json")
    for required in ("title", "urgency", "status"):
        if changes.get(required) is None:
            changes.pop(required, None)
    if "assigned_to" in changes:
        await _ensure_assignee_exists(changes["assigned_to"], session)
    if "deadline" in changes:
        changes["deadline"] = payload.deadline

    previous_status = ticket.status
    for field_name, value in changes.items():
        setattr(ticket, field_name, value)
    ticket.updated_at = utcnow()
    await session.commit()
    await session.refresh(ticket)
    response = TicketRead.model_validate(ticket)

    action = _update_action(previous_status, changes.get("status"))
    if action is None:
        logger.debug("Ticket %s already in progress; skipping webhook.", ticket.id)
    else:
        await _notify_ticket_event(
            session,
            action=action,
            ticket=_ticket_snapshot(ticket),
            created_by=ticket.created_by,
            assigned_to=ticket.assigned_to,
            actor=user,
        )
    return response


@router.patch("/{ticket_id}/complete", response_model=TicketRead)
async def complete_ticket(
    ticket_id: int,
    payload: TicketComplete,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> TicketRead:
    ticket = await _get_ticket_or_404(ticket_id, session)
    _ensure_can_access(ticket, user)

    ticket.status = TicketStatus.COMPLETED.value
    ticket.solution_type = payload.solution_type
    ticket.solution_data = payload.solution_data
    ticket.output_result = payload.output_result
    ticket.updated_at = utcnow()
    await session.commit()
    await session.refresh(ticket)
    response = TicketRead.model_validate(ticket)

    await _notify_ticket_event(
        session,
        action=WebhookAction.SOLVED,
        ticket=_ticket_snapshot(ticket),
        created_by=ticket.created_by,
        assigned_to=ticket.assigned_to,
        actor=user,
    )
    return response


@router.patch("/{ticket_id}/edit", response_model=TicketRead)
async def edit_ticket(
    ticket_id: int,
    payload: TicketEdit,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> TicketRead:
    ticket = await _get_ticket_or_404(ticket_id, session)
    if ticket.created_by != user.id and user.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the ticket creator can edit it",
        )
    if ticket.edited:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This ticket has already been edited and cannot be modified again.",
        )

    changes = payload.model_dump(exclude_unset=True)
    if "urgency" in changes and changes["urgency"] is not None:
        changes["urgency"] = changes["urgency"].value
    for field_name, value in changes.items():
        setattr(ticket, field_name, value)
    ticket.edited = True
    ticket.updated_at = utcnow()
    await session.commit()
    await session.refresh(ticket)
    response = TicketRead.model_validate(ticket)

    await _notify_ticket_event(
        session,
        action=WebhookAction.UPDATED,
        ticket=_ticket_snapshot(ticket),
        created_by=ticket.created_by,
        assigned_to=ticket.assigned_to,
        actor=user,
    )
    return response


@router.delete(
    "/{ticket_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def delete_ticket(
    ticket_id: int,
    user: User = Depends(require_approved_user),
    session: AsyncSession = Depends(get_session),
) -> Response:
    ticket = await _get_ticket_or_404(ticket_id, session)
    if ticket.created_by != user.id and user.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the ticket creator can delete it",
        )

    snapshot = _ticket_snapshot(ticket)
    created_by, assigned_to = ticket.created_by, ticket.assigned_to
    await session.delete(ticket)
    await session.commit()

    await _notify_ticket_event(
        session,
        action=WebhookAction.DELETED,
        ticket=snapshot,
        created_by=created_by,
        assigned_to=assigned_to,
        actor=user,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
