import hmac
import hashlib
from dataclasses import dataclass
from typing import Mapping

from fastapi import HTTPException, Header

from igsp_hub.config import settings
from igsp_hub.errors import InvalidSignature


@dataclass(frozen=True)
class SignedRequest:
    raw_body: bytes
    timestamp: str
    signature: str
    api_key: str


class SignatureCodec:
    """
    HMAC-SHA256 over the request body exactly as transmitted, followed by the
    X-Timestamp header string. The body must be the bytes read off the wire,
    before any JSON parsing.
    """

    digest = hashlib.sha256

    def _message(self, raw_body: bytes, timestamp: str) -> bytes:
        if not isinstance(raw_body, (bytes, bytearray)):
            raise ValueError("raw_body must be bytes")
        if not timestamp:
            raise ValueError("timestamp is required")
        return bytes(raw_body) + timestamp.encode()

    def sign(self, raw_body: bytes, timestamp: str, secret_key: str) -> str:
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        return hmac.new(secret_key.encode(), self._message(raw_body, timestamp), self.digest).hexdigest()

    def verify(self, raw_body: bytes, timestamp: str, signature: str, secret_key: str) -> bool:
        expected = self.sign(raw_body, timestamp, secret_key)
        return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


def parse_signed_request(headers: Mapping[str, str], raw_body: bytes) -> SignedRequest:
    lowered = {k.lower(): v for k, v in headers.items()}
    authorization = lowered.get("authorization", "")
    if not authorization.startswith("Bearer "):
        raise InvalidSignature("Authorization: Bearer <api_key> header is required")
    api_key = authorization.split(" ", 1)[1].strip()
    timestamp = lowered.get("x-timestamp", "").strip()
    signature = lowered.get("x-signature", "").strip().lower()
    if not api_key:
        raise InvalidSignature("api key is empty")
    if not timestamp:
        raise InvalidSignature("X-Timestamp header is required")
    if not signature:
        raise InvalidSignature("X-Signature header is required")
    return SignedRequest(raw_body=raw_body, timestamp=timestamp, signature=signature, api_key=api_key)


def require_admin_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency guarding the admin routes when ADMIN_TOKEN is configured.
    """
    if not settings.admin_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode(), settings.admin_token.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
