"""Assemble flat, JSON-ready webhook payloads for each supported action."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

UNKNOWN_USER_NAME = "Unknown User"
UNKNOWN_USER_EMAIL = "unknown@example.com"


class PayloadError(ValueError):
    """Raised when the context for an action lacks a required field."""


class WebhookAction(str, Enum):
    TICKET_CREATED = "ticket_created"
    UPDATED = "updated"
    IN_WORK = "in_work"
    SOLVED = "solved"
    DELETED = "deleted"
    ROLE_CHANGED = "role_changed"
    USER_APPROVED = "user_approved"
    USER_REJECTED = "user_rejected"
    SHARED_WORKFLOW = "sharedWorkflow"
    SHARED_PROMPT = "sharedPrompt"
    NEW_MAIL = "new_mail"


TICKET_ACTIONS = frozenset(
    {
        WebhookAction.TICKET_CREATED,
        WebhookAction.UPDATED,
        WebhookAction.IN_WORK,
        WebhookAction.SOLVED,
        WebhookAction.DELETED,
    }
)
USER_ACTIONS = frozenset(
    {
        WebhookAction.ROLE_CHANGED,
        WebhookAction.USER_APPROVED,
        WebhookAction.USER_REJECTED,
    }
)
SHARE_ACTIONS = frozenset({WebhookAction.SHARED_WORKFLOW, WebhookAction.SHARED_PROMPT})

REQUIRED_CONTEXT_FIELDS: dict[WebhookAction, tuple[str, ...]] = {
    **{action: ("ticket.id", "ticket.title") for action in TICKET_ACTIONS},
    WebhookAction.ROLE_CHANGED: ("subject.id", "prev_role", "current_role"),
    WebhookAction.USER_APPROVED: ("subject.id",),
    WebhookAction.USER_REJECTED: ("subject.id",),
    WebhookAction.SHARED_WORKFLOW: ("subject.id", "backup.id", "backup.title", "access_role"),
    WebhookAction.SHARED_PROMPT: ("subject.id", "backup.id", "backup.title", "access_role"),
    WebhookAction.NEW_MAIL: ("subject.id", "mail.id", "mail.subject"),
}


def category_for_action(action: WebhookAction | str) -> str:
    action = WebhookAction(action)
    if action in TICKET_ACTIONS:
        return "tickets"
    if action in USER_ACTIONS:
        return "users"
    if action in SHARE_ACTIONS:
        return "backups"
    return "mails"


def _field(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def _lookup(context: Mapping[str, Any], path: str) -> Any:
    node: Any = context
    for part in path.split("."):
        node = _field(node, part)
        if node is None:
            return None
    return node


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def resolve_name(user: Any) -> str:
    """Full name, then email, then a fixed placeholder."""

    for candidate in (_field(user, "full_name"), _field(user, "email")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return UNKNOWN_USER_NAME


def resolve_email(user: Any) -> str:
    email = _field(user, "email")
    if isinstance(email, str) and email.strip():
        return email.strip()
    return UNKNOWN_USER_EMAIL


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: datetime) -> str:
    return _as_utc(value).isoformat().replace("+00:00", "Z")


def split_deadline(deadline: datetime | str | None) -> tuple[str | None, str | None]:
    """Split a deadline into UTC ``YYYY-MM-DD`` and 24-hour ``HH:MM`` parts."""

    if deadline is None:
        return None, None
    if isinstance(deadline, str):
        raw = deadline.strip()
        if not raw:
            return None, None
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            deadline = datetime.fromisoformat(raw)
        except ValueError:
            return None, None
    moment = _as_utc(deadline)
    return moment.strftime("%Y-%m-%d"), moment.strftime("%H:%M")


def _identity(prefix: str, user: Any) -> dict[str, Any]:
    return {
        f"{prefix}_id": _field(user, "id"),
        f"{prefix}_email": resolve_email(user),
        f"{prefix}_name": resolve_name(user),
    }


def _ticket_fields(context: Mapping[str, Any]) -> dict[str, Any]:
    ticket = context["ticket"]
    date, time = split_deadline(_field(ticket, "deadline"))
    fields = {
        "ticket_id": _field(ticket, "id"),
        "ticket_title": _field(ticket, "title"),
        "ticket_urgency": _field(ticket, "urgency"),
        "ticket_status": _field(ticket, "status"),
        "ticket_details": _field(ticket, "details"),
        "date": date,
        "time": time,
    }
    fields.update(_identity("creator", context.get("creator")))
    fields.update(_identity("worker", context.get("worker")))
    return fields


def _role_change_fields(context: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "roleChanged": context["prev_role"] != context["current_role"],
        "prevRole": context["prev_role"],
        "currentRole": context["current_role"],
    }


def _approval_fields(context: Mapping[str, Any]) -> dict[str, Any]:
    subject = context["subject"]
    return {
        "approval_status": _field(subject, "approval_status"),
        "role": _field(subject, "role"),
    }


def _share_fields(context: Mapping[str, Any]) -> dict[str, Any]:
    backup = context["backup"]
    return {
        "backup_id": _field(backup, "id"),
        "backup_title": _field(backup, "title"),
        "backup_type": _field(backup, "backup_type"),
        "access_role": context["access_role"],
    }


def _mail_fields(context: Mapping[str, Any]) -> dict[str, Any]:
    mail = context["mail"]
    return {
        "mail_id": _field(mail, "id"),
        "mail_subject": _field(mail, "subject"),
        "thread_id": _field(mail, "thread_id"),
    }


_DOMAIN_BUILDERS: dict[WebhookAction, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
    **{action: _ticket_fields for action in TICKET_ACTIONS},
    WebhookAction.ROLE_CHANGED: _role_change_fields,
    WebhookAction.USER_APPROVED: _approval_fields,
    WebhookAction.USER_REJECTED: _approval_fields,
    WebhookAction.SHARED_WORKFLOW: _share_fields,
    WebhookAction.SHARED_PROMPT: _share_fields,
    WebhookAction.NEW_MAIL: _mail_fields,
}


def build_payload(
    action: WebhookAction | str,
    context: Mapping[str, Any],
    preferences: Mapping[str, bool] | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the outbound event for ``action``.

    ``context`` carries ``actor`` and ``subject`` identities (mappings or
    objects exposing ``id``, ``email`` and ``full_name``) plus the fields the
    action needs: ``ticket``/``creator``/``worker`` for ticket actions,
    ``prev_role``/``current_role`` for role changes, ``backup`` and
    ``access_role`` for shares, ``mail`` for new mail. ``preferences`` is the
    recipient's flattened notification flags and is merged in last.

    Raises :class:`PayloadError` when the action is unknown or a required
    context field is missing; nothing partial is returned.
    """

    try:
        action = WebhookAction(action)
    except ValueError as exc:
        raise PayloadError(f"Unsupported webhook action: {action!r}") from exc

    missing = [
        path for path in REQUIRED_CONTEXT_FIELDS[action] if _is_missing(_lookup(context, path))
    ]
    if missing:
        raise PayloadError(
            f"Webhook action '{action.value}' is missing required context: {', '.join(missing)}"
        )

    payload: dict[str, Any] = {
        "action": action.value,
        "timestamp": _isoformat(now or datetime.now(timezone.utc)),
    }
    payload.update(_identity("actor", context.get("actor")))
    payload.update(_identity("user", context.get("subject")))
    payload.update(_DOMAIN_BUILDERS[action](context))
    if preferences:
        payload.update(preferences)
    return payload
