from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from relaydesk.core.config import get_settings
from relaydesk.core.db import dispose_engine, get_engine
from relaydesk.core.webhook_dispatcher import DispatchResult
from relaydesk.models import NotificationSetting, User
from relaydesk.services import notification_preferences, webhook_notifications
from relaydesk.services.notification_preferences import (
    NotificationPreferences,
    get_preferences,
    save_preferences,
)


@pytest.fixture(autouse=True)
def notifications_db(tmp_path, monkeypatch):
    db_path = tmp_path / "notify.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.delenv("RELAY_DESK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    yield
    asyncio.run(dispose_engine())
    get_settings.cache_clear()


class _BrokenSession:
    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("no such table"))


TICKET_CONTEXT = {
    "actor": {"id": 1, "email": "admin@example.com"},
    "ticket": {"id": 9, "title": "VPN down"},
}


async def _create_user(session: AsyncSession, **overrides) -> User:
    user = User(
        email=overrides.pop("email", "worker@example.com"),
        hashed_password="x",
        approval_status="approved",
        **overrides,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


@pytest.mark.asyncio
async def test_unknown_user_gets_all_flags_enabled():
    engine = await get_engine()
    async with AsyncSession(engine) as session:
        preferences = await get_preferences(session, 4242)
    assert preferences == NotificationPreferences()
    assert all(preferences.as_payload().values())
    assert set(preferences.as_payload()) == set(notification_preferences.PAYLOAD_KEYS.values())


@pytest.mark.asyncio
async def test_preferences_fall_back_when_store_fails():
    assert await get_preferences(_BrokenSession(), 1) == NotificationPreferences()
    assert await get_preferences(_BrokenSession(), None) == NotificationPreferences()


@pytest.mark.asyncio
async def test_saved_preferences_are_read_back():
    engine = await get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        user = await _create_user(session)
        saved = await save_preferences(session, user.id, {"solved_ticket": False, "new_mail": None})
        assert saved.solved_ticket is False
        assert saved.new_mail is True

        again = await save_preferences(session, user.id, {"role_change": False})
        assert again.solved_ticket is False
        assert again.role_change is False

        stored = await session.get(NotificationSetting, 1)
        assert stored is not None and stored.user_id == user.id
        assert (await get_preferences(session, user.id)).as_payload()["solvedTicket"] is False


@pytest.mark.asyncio
async def test_notify_without_destination_sends_nothing(monkeypatch):
    calls = []

    async def _fake_send(url, payload, **kwargs):
        calls.append(url)
        return DispatchResult(success=True)

    monkeypatch.setattr(webhook_notifications, "send_webhook", _fake_send)
    engine = await get_engine()
    async with AsyncSession(engine) as session:
        result = await webhook_notifications.notify(session, action="solved", context=TICKET_CONTEXT)

    assert result.success is False
    assert result.error == "not-configured"
    assert calls == []


@pytest.mark.asyncio
async def test_notify_prefers_recipient_override_and_embeds_preferences(monkeypatch):
    monkeypatch.setenv("RELAY_DESK_WEBHOOK_URL", "https://env.example/hook")
    get_settings.cache_clear()
    captured = {}

    async def _fake_send(url, payload, **kwargs):
        captured["url"] = url
        captured["payload"] = payload
        return DispatchResult(success=True, user_notified=True, status_code=200)

    monkeypatch.setattr(webhook_notifications, "send_webhook", _fake_send)
    engine = await get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        user = await _create_user(session, webhook_url="https://me.example/inbox")
        await save_preferences(session, user.id, {"solved_ticket": False})

        result = await webhook_notifications.notify(
            session,
            action="solved",
            context={**TICKET_CONTEXT, "subject": user, "worker": user},
            recipient=user,
        )

    assert result.user_notified is True
    assert captured["url"] == "https://me.example/inbox"
    # Disabled flags are reported, not enforced.
    assert captured["payload"]["solvedTicket"] is False
    assert captured["payload"]["worker_email"] == "worker@example.com"


@pytest.mark.asyncio
async def test_best_effort_absorbs_errors(monkeypatch):
    monkeypatch.setenv("RELAY_DESK_WEBHOOK_URL", "https://env.example/hook")
    get_settings.cache_clear()

    async def _exploding_send(url, payload, **kwargs):
        raise RuntimeError("dispatcher crashed")

    monkeypatch.setattr(webhook_notifications, "send_webhook", _exploding_send)
    engine = await get_engine()
    async with AsyncSession(engine) as session:
        crashed = await webhook_notifications.notify_best_effort(
            session, action="solved", context=TICKET_CONTEXT
        )
        incomplete = await webhook_notifications.notify_best_effort(
            session, action="role_changed", context={"subject": SimpleNamespace(id=3)}
        )

    assert crashed == DispatchResult(success=False, error="dispatcher crashed")
    assert incomplete.success is False
    assert "prev_role" in (incomplete.error or "")
