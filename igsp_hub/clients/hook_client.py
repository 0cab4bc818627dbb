import asyncio
import json
import time
import uuid
from collections import deque
from datetime import UTC, datetime
from decimal import Decimal
from typing import Optional

import httpx

from igsp_hub.config import settings
from igsp_hub.logging_config import get_logger
from igsp_hub.security import SignatureCodec

logger = get_logger(__name__)


class HookClientError(Exception):
    def __init__(self, status_code: int, error: str, message: str = ""):
        self.status_code = status_code
        self.error = error
        self.message = message
        super().__init__(f"{status_code} {error}: {message}")


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class HookClient:
    """
    Sends signed hooks to the other side of an integration.

    The body is serialized once and every attempt ships the same bytes, so a
    retried bet keeps its transaction_id. Each attempt is signed with a fresh
    timestamp, which keeps retries valid when the receiver tracks nonces.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: Optional[str] = None,
        rate_limit_per_minute: int | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self._secret_key = secret_key
        self.codec = SignatureCodec()
        self.client = httpx.AsyncClient(
            base_url=str(base_url or settings.provider_base_url), timeout=timeout, transport=transport
        )
        self._sent_at: deque[float] = deque()
        self.rate_limit_per_minute = rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    def signed_headers(self, raw_body: bytes) -> dict:
        timestamp = _timestamp()
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Timestamp": timestamp,
            "X-Signature": self.codec.sign(raw_body, timestamp, self._secret_key),
        }

    async def _take_send_slot(self) -> bool:
        """Sliding one-minute window over the attempts this client has sent."""
        cutoff = time.monotonic() - 60
        while self._sent_at and self._sent_at[0] <= cutoff:
            self._sent_at.popleft()
        if len(self._sent_at) >= self.rate_limit_per_minute:
            return False
        self._sent_at.append(time.monotonic())
        return True

    async def _send_with_retry(self, path: str, raw_body: bytes) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while True:
            allowed = await self._take_send_slot()
            if not allowed:
                headers = {"Retry-After": str(backoff)}
                return httpx.Response(status_code=429, headers=headers, request=httpx.Request("POST", path))
            try:
                response = await self.client.post(path, content=raw_body, headers=self.signed_headers(raw_body))
            except httpx.RequestError as exc:
                if retries >= self.max_retries:
                    raise HookClientError(502, "Unreachable", str(exc)) from exc
                logger.warning("Hook delivery error=%s retry_in=%ss", exc, backoff)
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            if response.status_code == 429 and retries < self.max_retries:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            if response.status_code >= 500 and retries < self.max_retries:
                logger.warning("Hook got status=%s retry_in=%ss", response.status_code, backoff)
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            return response

    async def send(self, payload: dict, path: str = "/hooks") -> dict:
        raw_body = json.dumps(payload, separators=(",", ":"), default=str).encode()
        resp = await self._send_with_retry(path, raw_body)
        if resp.status_code in (200, 201):
            return resp.json()
        try:
            body = resp.json()
        except ValueError:
            body = {"error": "Unexpected", "message": resp.text}
        raise HookClientError(resp.status_code, body.get("error", "Unexpected"), body.get("message", ""))

    async def create_session(
        self,
        session_id: str,
        game_id: str,
        player_id: str,
        currency: str,
        balance: Decimal,
        **options,
    ) -> dict:
        payload = {
            "action": "session-create",
            "session_id": session_id,
            "game_id": game_id,
            "player_id": player_id,
            "currency": currency,
            "balance": str(balance),
            **options,
        }
        return await self.send(payload)

    async def balance(self, player_id: str, currency: str, session_id: Optional[str] = None) -> dict:
        payload = {"action": "balance", "player_id": player_id, "currency": currency}
        if session_id:
            payload["session_id"] = session_id
        return await self.send(payload)

    async def bet(self, session_id: str, player_id: str, currency: str, amount: Decimal,
                  transaction_id: Optional[str] = None, **options) -> dict:
        return await self._move("bet", session_id, player_id, currency, amount, transaction_id, options)

    async def win(self, session_id: str, player_id: str, currency: str, amount: Decimal,
                  transaction_id: Optional[str] = None, **options) -> dict:
        return await self._move("win", session_id, player_id, currency, amount, transaction_id, options)

    async def refund(self, session_id: str, player_id: str, currency: str, bet_transaction_id: str,
                     transaction_id: Optional[str] = None, **options) -> dict:
        payload = {
            "action": "refund",
            "transaction_id": transaction_id or str(uuid.uuid4()),
            "bet_transaction_id": bet_transaction_id,
            "session_id": session_id,
            "player_id": player_id,
            "currency": currency,
            **options,
        }
        return await self.send(payload)

    async def _move(self, action, session_id, player_id, currency, amount, transaction_id, options) -> dict:
        payload = {
            "action": action,
            "transaction_id": transaction_id or str(uuid.uuid4()),
            "session_id": session_id,
            "player_id": player_id,
            "currency": currency,
            "amount": str(amount),
            **options,
        }
        return await self.send(payload)

    async def aclose(self):
        await self.client.aclose()
