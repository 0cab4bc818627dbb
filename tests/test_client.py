import asyncio
from collections import deque
from decimal import Decimal

import httpx
import pytest

from conftest import API_KEY, SECRET
from igsp_hub.clients.hook_client import HookClient, HookClientError
from igsp_hub.security import SignatureCodec


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.headers = {}
        self._body = body or {}
        self.text = ""

    def json(self):
        return self._body


async def _no_sleep(_):
    return None


def test_retries_server_errors_with_same_body_and_fresh_signatures(monkeypatch):
    monkeypatch.setattr("igsp_hub.clients.hook_client.asyncio.sleep", _no_sleep)
    client = HookClient(API_KEY, SECRET, base_url="http://hub.test", max_retries=5, retry_backoff_seconds=1)

    statuses = [500, 503, 200]
    calls = []

    async def fake_post(url, content, headers):
        calls.append((content, headers))
        return FakeResponse(statuses[len(calls) - 1], {"balance": "97.50", "transaction_id": "PTX-1"})

    monkeypatch.setattr(client.client, "post", fake_post)

    result = asyncio.run(client.bet("sess-1", "player-1", "USD", Decimal("2.50"), transaction_id="tx-1"))

    assert result == {"balance": "97.50", "transaction_id": "PTX-1"}
    assert len(calls) == 3, "Should have attempted three times (500, 503, then 200)"
    assert len({content for content, _ in calls}) == 1
    codec = SignatureCodec()
    for content, headers in calls:
        assert headers["Authorization"] == f"Bearer {API_KEY}"
        assert codec.verify(content, headers["X-Timestamp"], headers["X-Signature"], SECRET)


def test_gives_up_after_max_retries(monkeypatch):
    monkeypatch.setattr("igsp_hub.clients.hook_client.asyncio.sleep", _no_sleep)
    client = HookClient(API_KEY, SECRET, base_url="http://hub.test", max_retries=2, retry_backoff_seconds=1)
    calls = {"invokes": 0}

    async def always_down(url, content, headers):
        calls["invokes"] += 1
        return FakeResponse(503, {"error": "Internal", "message": "storage unavailable"})

    monkeypatch.setattr(client.client, "post", always_down)

    with pytest.raises(HookClientError) as excinfo:
        asyncio.run(client.win("sess-1", "player-1", "USD", Decimal("1.00"), transaction_id="tx-1"))
    assert calls["invokes"] == 3
    assert excinfo.value.status_code == 503
    assert excinfo.value.error == "Internal"


def test_client_errors_are_not_retried(monkeypatch):
    client = HookClient(API_KEY, SECRET, base_url="http://hub.test", max_retries=5)
    calls = {"invokes": 0}

    async def conflict(url, content, headers):
        calls["invokes"] += 1
        return FakeResponse(409, {"error": "AlreadyRefunded", "message": "bet tx-1 is already refunded"})

    monkeypatch.setattr(client.client, "post", conflict)

    with pytest.raises(HookClientError) as excinfo:
        asyncio.run(client.refund("sess-1", "player-1", "USD", "tx-1"))
    assert calls["invokes"] == 1
    assert excinfo.value.error == "AlreadyRefunded"


def test_rate_limit_returns_429_on_second_call(monkeypatch):
    client = HookClient(API_KEY, SECRET, base_url="http://hub.test", rate_limit_per_minute=1, max_retries=0)

    async def ok(url, content, headers):
        return FakeResponse(200)

    monkeypatch.setattr(client.client, "post", ok)

    loop = asyncio.new_event_loop()
    try:
        first = loop.run_until_complete(client._send_with_retry("/hooks", b"{}"))
        second = loop.run_until_complete(client._send_with_retry("/hooks", b"{}"))
    finally:
        loop.close()

    assert first.status_code == 200
    assert second.status_code == 429, "Second call should return 429 when rate limit is hit"


def test_rate_limit_window_slides():
    client = HookClient(API_KEY, SECRET, base_url="http://hub.test", rate_limit_per_minute=2, max_retries=0)

    async def slots():
        return [await client._take_send_slot() for _ in range(3)]

    assert asyncio.run(slots()) == [True, True, False]
    # age the recorded attempts past the one-minute window
    client._sent_at = deque(t - 61 for t in client._sent_at)
    assert asyncio.run(slots()) == [True, True, False]


def test_client_against_the_hub(app_module):
    main, _ = app_module

    async def scenario():
        client = HookClient(
            API_KEY,
            SECRET,
            base_url="http://hub.test",
            transport=httpx.ASGITransport(app=main.app),
        )
        try:
            session = await client.create_session("sess-9", "book-of-gold", "player-9", "EUR", Decimal("50.00"))
            placed = await client.bet("sess-9", "player-9", "EUR", Decimal("12.34"), transaction_id="tx-9")
            again = await client.bet("sess-9", "player-9", "EUR", Decimal("12.34"), transaction_id="tx-9")
            balance = await client.balance("player-9", "EUR", session_id="sess-9")
            return session, placed, again, balance
        finally:
            await client.aclose()

    session, placed, again, balance = asyncio.run(scenario())
    assert session["url"].startswith("https://games.test/launch/book-of-gold?")
    assert placed["balance"] == "37.66"
    assert again == placed
    assert balance == {"balance": "37.66"}
