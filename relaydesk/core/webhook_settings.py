"""Destination resolution for outbound webhooks.

A destination is resolved from an ordered list of providers, first match
wins: the recipient's own webhook URL, the legacy single-URL setting, the
base URL plus a per-category path, and finally the environment fallback.
Resolution runs on every dispatch; nothing here is cached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.config import get_settings
from relaydesk.models import SystemSetting

logger = logging.getLogger(__name__)

WEBHOOK_CATEGORIES: tuple[str, ...] = ("tickets", "users", "mails", "backups")

# Categories whose path falls back to the tickets path when unset.
_PATH_FALLBACK_CATEGORY = "tickets"

LEGACY_URL_KEY = "webhook_url"
BASE_URL_KEYS: tuple[str, ...] = ("webhook_base_url", "webhook_domain")


def path_setting_keys(category: str) -> tuple[str, ...]:
    return (f"webhook_path_{category}", f"webhook_{category}_path")


def webhook_setting_keys() -> list[str]:
    keys = [LEGACY_URL_KEY, *BASE_URL_KEYS]
    for category in WEBHOOK_CATEGORIES:
        keys.extend(path_setting_keys(category))
    return keys


def _clean(value: object | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _first_value(values: Mapping[str, str | None], keys: Iterable[str]) -> str | None:
    for key in keys:
        cleaned = _clean(values.get(key))
        if cleaned:
            return cleaned
    return None


def is_valid_webhook_url(value: str | None) -> bool:
    """Return ``True`` for absolute ``http``/``https`` URLs with a host."""

    if not value or any(char.isspace() for char in value):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


@dataclass(frozen=True)
class WebhookDestination:
    base_url: str | None = None
    path_segment: str | None = None
    legacy_full_url: str | None = None

    @property
    def full_url(self) -> str | None:
        if self.legacy_full_url:
            return self.legacy_full_url
        if self.base_url and self.path_segment:
            return f"{self.base_url}{self.path_segment}"
        return None

    @property
    def is_configured(self) -> bool:
        return is_valid_webhook_url(self.full_url)


class DestinationProvider(Protocol):
    name: str

    def resolve(self, category: str) -> str | None:
        ...


class UserOverrideProvider:
    name = "user_override"

    def __init__(self, url: str | None) -> None:
        self._url = _clean(url)

    def resolve(self, category: str) -> str | None:
        return self._url


class LegacyUrlProvider:
    name = "legacy_url"

    def __init__(self, values: Mapping[str, str | None]) -> None:
        self._values = values

    def resolve(self, category: str) -> str | None:
        return _clean(self._values.get(LEGACY_URL_KEY))

    def destination(self) -> WebhookDestination:
        return WebhookDestination(legacy_full_url=self.resolve(""))


class BaseUrlPathProvider:
    name = "base_url_path"

    def __init__(self, values: Mapping[str, str | None]) -> None:
        self._values = values

    def destination(self, category: str) -> WebhookDestination:
        base_url = _first_value(self._values, BASE_URL_KEYS)
        path = _first_value(self._values, path_setting_keys(category))
        if path is None and category != _PATH_FALLBACK_CATEGORY:
            path = _first_value(self._values, path_setting_keys(_PATH_FALLBACK_CATEGORY))
        return WebhookDestination(base_url=base_url, path_segment=path)

    def resolve(self, category: str) -> str | None:
        return self.destination(category).full_url


class EnvFallbackProvider:
    name = "environment"

    def __init__(self, url: str | None) -> None:
        self._url = _clean(url)

    def resolve(self, category: str) -> str | None:
        return self._url


def select_destination(
    category: str, providers: Sequence[DestinationProvider]
) -> tuple[str | None, str | None]:
    """Return ``(url, provider name)`` for the first provider with a value.

    The winning string is validated; an invalid one is reported as
    unconfigured (``url`` is ``None``) instead of falling through to later
    providers. ``(None, None)`` means no provider had a value at all.
    """

    for provider in providers:
        url = provider.resolve(category)
        if not url:
            continue
        if not is_valid_webhook_url(url):
            logger.warning(
                "Ignoring invalid webhook URL %r from %s for category '%s'.",
                url,
                provider.name,
                category,
            )
            return None, provider.name
        return url, provider.name
    logger.debug("No webhook destination configured for category '%s'.", category)
    return None, None


def resolve_destination(
    category: str, providers: Sequence[DestinationProvider]
) -> str | None:
    return select_destination(category, providers)[0]


async def load_setting_values(
    session: AsyncSession, keys: Iterable[str] | None = None
) -> dict[str, str | None]:
    """Read webhook settings rows; an unreadable store yields an empty mapping."""

    wanted = list(keys) if keys is not None else webhook_setting_keys()
    try:
        result = await session.execute(
            select(SystemSetting.setting_key, SystemSetting.setting_value).where(
                SystemSetting.setting_key.in_(wanted)
            )
        )
    except SQLAlchemyError as exc:
        logger.warning("Could not read webhook settings from the database: %s", exc)
        return {}
    return {key: value for key, value in result.all()}


def build_providers(
    values: Mapping[str, str | None],
    *,
    user_override: str | None = None,
    env_url: str | None = None,
) -> list[DestinationProvider]:
    return [
        UserOverrideProvider(user_override),
        LegacyUrlProvider(values),
        BaseUrlPathProvider(values),
        EnvFallbackProvider(env_url),
    ]


async def load_destination(
    session: AsyncSession,
    category: str,
    *,
    user_override: str | None = None,
) -> str | None:
    values = await load_setting_values(session)
    providers = build_providers(
        values,
        user_override=user_override,
        env_url=get_settings().webhook_url,
    )
    return resolve_destination(category, providers)
