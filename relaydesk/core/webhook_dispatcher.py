"""Single-attempt delivery of webhook payloads over HTTPS POST."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from relaydesk.core.config import get_settings
from relaydesk.core.webhook_settings import is_valid_webhook_url

logger = logging.getLogger(__name__)

# Receivers signal that they reached the end user by echoing this phrase.
USER_NOTIFIED_MARKER = "user has been notified"


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    user_notified: bool = False
    status_code: int | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.success:
            result["userNotified"] = self.user_notified
        return result


def detect_user_notified(body: str | None) -> bool:
    if not body:
        return False
    return USER_NOTIFIED_MARKER in body.casefold()


async def _post(
    url: str, content: bytes, headers: dict[str, str], timeout: float
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout)) as client:
        return await client.post(url, content=content, headers=headers)


async def send_webhook(
    url: str | None,
    payload: Mapping[str, Any],
    *,
    timeout: float | None = None,
    user_agent: str | None = None,
) -> DispatchResult:
    """POST ``payload`` as JSON to ``url`` once and report the outcome.

    Never raises. A malformed URL short-circuits before any network I/O, the
    whole attempt is abandoned after ``timeout`` seconds, and any non-2xx
    status counts as failure. On success the response body is scanned for
    the "user has been notified" marker (case-insensitive).
    """

    if url is None or not is_valid_webhook_url(url):
        logger.warning("Skipping webhook dispatch; invalid destination URL %r.", url)
        return DispatchResult(success=False, error="invalid-url")

    settings = get_settings()
    timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent or settings.webhook_user_agent,
    }

    try:
        content = json.dumps(dict(payload), ensure_ascii=False, default=str).encode("utf-8")
    except (TypeError, ValueError) as exc:
        logger.warning("Could not serialize webhook payload for %s: %s", url, exc)
        return DispatchResult(success=False, error=str(exc))

    action = payload.get("action")
    try:
        response = await asyncio.wait_for(_post(url, content, headers, timeout), timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Webhook '%s' to %s timed out after %.1f seconds.", action, url, timeout
        )
        return DispatchResult(success=False, error="timeout")
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("Failed to send webhook '%s' to %s: %s", action, url, exc)
        return DispatchResult(success=False, error=str(exc))

    status_code = response.status_code
    if not 200 <= status_code < 300:
        logger.warning(
            "Webhook '%s' to %s failed with status %s %s.",
            action,
            url,
            status_code,
            response.reason_phrase,
        )
        return DispatchResult(
            success=False,
            status_code=status_code,
            error=f"HTTP {status_code}",
        )

    try:
        body = response.text
    except (httpx.HTTPError, UnicodeDecodeError) as exc:
        logger.warning("Could not read webhook response from %s: %s", url, exc)
        body = None

    user_notified = detect_user_notified(body)
    logger.info(
        "Sent webhook '%s' to %s (status %s, user notified: %s).",
        action,
        url,
        status_code,
        user_notified,
    )
    return DispatchResult(success=True, user_notified=user_notified, status_code=status_code)
