from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.config import get_settings
from relaydesk.core.db import get_session
from relaydesk.core.security import require_admin
from relaydesk.core.webhook_settings import (
    BASE_URL_KEYS,
    LEGACY_URL_KEY,
    WEBHOOK_CATEGORIES,
    BaseUrlPathProvider,
    build_providers,
    is_valid_webhook_url,
    load_setting_values,
    path_setting_keys,
    select_destination,
)
from relaydesk.models import SystemSetting, User, utcnow
from relaydesk.schemas import (
    SystemSettingRead,
    SystemSettingWrite,
    WebhookDestinationStatus,
    WebhookSettingsRead,
    WebhookSettingsUpdate,
)

router = APIRouter(prefix="/api/admin", tags=["Settings"])

logger = logging.getLogger(__name__)

_BASE_URL_KEY = BASE_URL_KEYS[0]


def _path_key(category: str) -> str:
    return path_setting_keys(category)[0]


async def _upsert_setting(
    session: AsyncSession,
    key: str,
    value: str | None,
    *,
    updated_by: int,
    description: str | None = None,
    setting_type: str | None = None,
    create: bool = True,
) -> SystemSetting | None:
    result = await session.execute(select(SystemSetting).where(SystemSetting.setting_key == key))
    row = result.scalar_one_or_none()
    if row is None:
        if not create:
            return None
        row = SystemSetting(setting_key=key, setting_type=setting_type or "string")
        session.add(row)
    row.setting_value = value
    if description is not None:
        row.setting_description = description
    if setting_type is not None:
        row.setting_type = setting_type
    row.updated_by = updated_by
    row.updated_at = utcnow()
    return row


def _webhook_settings_view(values: dict[str, str | None]) -> WebhookSettingsRead:
    def first(keys: tuple[str, ...]) -> str | None:
        for key in keys:
            if values.get(key):
                return values[key]
        return None

    return WebhookSettingsRead(
        webhook_url=values.get(LEGACY_URL_KEY) or None,
        base_url=first(BASE_URL_KEYS),
        paths={category: first(path_setting_keys(category)) for category in WEBHOOK_CATEGORIES},
    )


@router.get("/system-settings", response_model=list[SystemSettingRead])
async def list_system_settings(
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> list[SystemSettingRead]:
    result = await session.execute(select(SystemSetting).order_by(SystemSetting.setting_key.asc()))
    return [SystemSettingRead.model_validate(row) for row in result.scalars().all()]


@router.put("/system-settings", response_model=SystemSettingRead)
async def upsert_system_setting(
    payload: SystemSettingWrite,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> SystemSettingRead:
    row = await _upsert_setting(
        session,
        payload.setting_key,
        payload.setting_value,
        updated_by=admin.id,
        description=payload.setting_description,
        setting_type=payload.setting_type,
    )
    await session.commit()
    await session.refresh(row)
    logger.info("System setting '%s' updated by user %s.", row.setting_key, admin.id)
    return SystemSettingRead.model_validate(row)


@router.get("/webhook-settings", response_model=WebhookSettingsRead)
async def read_webhook_settings(
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> WebhookSettingsRead:
    return _webhook_settings_view(await load_setting_values(session))


@router.put("/webhook-settings", response_model=WebhookSettingsRead)
async def update_webhook_settings(
    payload: WebhookSettingsUpdate,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> WebhookSettingsRead:
    provided = payload.model_fields_set
    values = dict(await load_setting_values(session))

    if "webhook_url" in provided:
        values[LEGACY_URL_KEY] = payload.webhook_url
    if "base_url" in provided:
        for key in BASE_URL_KEYS:
            values[key] = None
        values[_BASE_URL_KEY] = payload.base_url
    for category, path in payload.paths.items():
        for key in path_setting_keys(category):
            values[key] = None
        values[_path_key(category)] = path

    base_url = values.get(_BASE_URL_KEY)
    if base_url and not is_valid_webhook_url(base_url):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook base URL must be an absolute http(s) URL",
        )
    combined = BaseUrlPathProvider(values)
    for category in WEBHOOK_CATEGORIES:
        destination = combined.destination(category)
        if destination.full_url and not destination.is_configured:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Base URL and {category} path do not form a valid URL: {destination.full_url}",
            )

    if "webhook_url" in provided:
        await _upsert_setting(session, LEGACY_URL_KEY, payload.webhook_url, updated_by=admin.id)
    if "base_url" in provided:
        await _upsert_setting(session, _BASE_URL_KEY, payload.base_url, updated_by=admin.id)
        for alias in BASE_URL_KEYS[1:]:
            await _upsert_setting(session, alias, None, updated_by=admin.id, create=False)
    for category, path in payload.paths.items():
        await _upsert_setting(session, _path_key(category), path, updated_by=admin.id)
        for alias in path_setting_keys(category)[1:]:
            await _upsert_setting(session, alias, None, updated_by=admin.id, create=False)
    await session.commit()
    logger.info("Webhook settings updated by user %s.", admin.id)

    return _webhook_settings_view(await load_setting_values(session))


@router.get("/webhook-settings/status", response_model=list[WebhookDestinationStatus])
async def webhook_settings_status(
    _: User = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> list[WebhookDestinationStatus]:
    values = await load_setting_values(session)
    providers = build_providers(values, env_url=get_settings().webhook_url)
    statuses = []
    for category in WEBHOOK_CATEGORIES:
        url, source = select_destination(category, providers)
        statuses.append(
            WebhookDestinationStatus(
                category=category,
                url=url,
                configured=url is not None,
                source=source,
            )
        )
    return statuses
