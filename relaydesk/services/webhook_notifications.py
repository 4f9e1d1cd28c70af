"""Notification phase run by mutating endpoints after their primary write."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.webhook_dispatcher import DispatchResult, send_webhook
from relaydesk.core.webhook_payloads import WebhookAction, build_payload, category_for_action
from relaydesk.core.webhook_settings import load_destination
from relaydesk.services.notification_preferences import get_preferences

logger = logging.getLogger(__name__)


def _recipient_attr(recipient: Any, name: str) -> Any:
    if recipient is None:
        return None
    if isinstance(recipient, Mapping):
        return recipient.get(name)
    return getattr(recipient, name, None)


async def notify(
    session: AsyncSession,
    *,
    action: WebhookAction | str,
    context: Mapping[str, Any],
    recipient: Any = None,
) -> DispatchResult:
    """Build and send one webhook for ``action``.

    ``recipient`` is the user the event is about; their notification flags
    are embedded in the payload and their personal webhook URL, when set,
    takes precedence over the system destination. Raises
    :class:`~relaydesk.core.webhook_payloads.PayloadError` for an incomplete
    context; every delivery problem is reported through the result.
    """

    action = WebhookAction(action)
    recipient_id = _recipient_attr(recipient, "id")
    preferences = await get_preferences(session, recipient_id)
    payload = build_payload(action, context, preferences.as_payload())

    category = category_for_action(action)
    url = await load_destination(
        session,
        category,
        user_override=_recipient_attr(recipient, "webhook_url"),
    )
    if url is None:
        logger.info(
            "Webhook '%s' not sent; no %s destination is configured.",
            action.value,
            category,
        )
        return DispatchResult(success=False, error="not-configured")

    return await send_webhook(url, payload)


async def notify_best_effort(
    session: AsyncSession,
    *,
    action: WebhookAction | str,
    context: Mapping[str, Any],
    recipient: Any = None,
) -> DispatchResult:
    """Run :func:`notify` without letting any failure escape.

    Endpoints call this once their own write has committed, so a broken
    notification can only ever be logged, never turned into an error
    response.
    """

    try:
        return await notify(session, action=action, context=context, recipient=recipient)
    except Exception as exc:  # noqa: BLE001 - notification errors must not reach the caller
        logger.exception("Webhook notification '%s' failed: %s", action, exc)
        return DispatchResult(success=False, error=str(exc))
