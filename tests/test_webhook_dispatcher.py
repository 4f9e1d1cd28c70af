from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from relaydesk.core.config import get_settings
from relaydesk.core.webhook_dispatcher import DispatchResult, detect_user_notified, send_webhook

PAYLOAD = {"action": "solved", "ticket_id": 5}


@pytest.fixture(autouse=True)
def dispatcher_settings(monkeypatch):
    monkeypatch.delenv("RELAY_DESK_WEBHOOK_TIMEOUT", raising=False)
    get_settings.cache_clear()
    _DummyAsyncClient.reset()
    yield
    get_settings.cache_clear()


class _DummyResponse:
    def __init__(self, status_code: int = 200, text: str = "", reason_phrase: str = "OK"):
        self.status_code = status_code
        self.text = text
        self.reason_phrase = reason_phrase


class _DummyAsyncClient:
    calls: list[dict] = []
    response = _DummyResponse()
    delay: float = 0.0
    error: Exception | None = None

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs

    @classmethod
    def reset(cls) -> None:
        cls.calls = []
        cls.response = _DummyResponse()
        cls.delay = 0.0
        cls.error = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, endpoint, *, content, headers):
        _DummyAsyncClient.calls.append(
            {"endpoint": endpoint, "content": content, "headers": headers}
        )
        if _DummyAsyncClient.delay:
            await asyncio.sleep(_DummyAsyncClient.delay)
        if _DummyAsyncClient.error is not None:
            raise _DummyAsyncClient.error
        return _DummyAsyncClient.response


@pytest.mark.asyncio
async def test_malformed_url_makes_no_request(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)

    result = await send_webhook("not-a-url", PAYLOAD)

    assert result == DispatchResult(success=False, error="invalid-url")
    assert await send_webhook(None, PAYLOAD) == DispatchResult(success=False, error="invalid-url")
    assert _DummyAsyncClient.calls == []


@pytest.mark.asyncio
async def test_posts_json_with_headers(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)

    result = await send_webhook("https://hooks.example/desk", PAYLOAD)

    assert result.success is True
    call = _DummyAsyncClient.calls[0]
    assert call["endpoint"] == "https://hooks.example/desk"
    assert json.loads(call["content"]) == PAYLOAD
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["headers"]["User-Agent"] == "RelayDesk/1.0"


@pytest.mark.asyncio
async def test_server_error_is_a_failure(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    _DummyAsyncClient.response = _DummyResponse(500, "boom", "Internal Server Error")

    result = await send_webhook("https://hooks.example/desk", PAYLOAD)

    assert result.success is False
    assert result.status_code == 500
    assert result.as_dict() == {"success": False}


@pytest.mark.asyncio
async def test_user_notified_marker_is_detected(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    _DummyAsyncClient.response = _DummyResponse(200, '{"message": "User has been notified"}')

    result = await send_webhook("https://hooks.example/desk", PAYLOAD)

    assert result.as_dict() == {"success": True, "userNotified": True}


@pytest.mark.asyncio
async def test_success_without_marker(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    _DummyAsyncClient.response = _DummyResponse(204, "")

    result = await send_webhook("https://hooks.example/desk", PAYLOAD)

    assert result.as_dict() == {"success": True, "userNotified": False}


@pytest.mark.asyncio
async def test_transport_error_is_a_failure(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    _DummyAsyncClient.error = httpx.ConnectError("connection refused")

    result = await send_webhook("https://hooks.example/desk", PAYLOAD)

    assert result.success is False
    assert "connection refused" in (result.error or "")


@pytest.mark.asyncio
async def test_slow_receiver_is_abandoned(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    _DummyAsyncClient.delay = 5.0

    started = time.monotonic()
    result = await send_webhook("https://hooks.example/desk", PAYLOAD, timeout=0.2)

    assert result == DispatchResult(success=False, error="timeout")
    assert time.monotonic() - started < 2.0


def test_marker_detection_is_case_insensitive():
    assert detect_user_notified("OK. USER HAS BEEN NOTIFIED.")
    assert not detect_user_notified("user was notified")
    assert not detect_user_notified(None)
