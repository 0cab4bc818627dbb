from datetime import UTC, datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from igsp_hub.errors import ReplayedRequest, StaleRequest, ValidationError
from igsp_hub.helpers import to_naive_utc
from igsp_hub.logging_config import get_logger
from igsp_hub.models import SeenSignature

logger = get_logger(__name__)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 X-Timestamp header. Naive values are read as UTC.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"X-Timestamp is not ISO-8601: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ReplayGuard:
    """
    Freshness window on signed requests, optionally upgraded to single use.

    Without nonce tracking a captured request can be replayed verbatim until
    its timestamp leaves the window. With it, every (api_key, timestamp,
    signature) triple is stored for the length of the window and a second
    sighting is rejected.
    """

    def __init__(
        self,
        window: timedelta = timedelta(minutes=5),
        nonce_tracking: bool = False,
        session_factory: Optional[sessionmaker] = None,
    ):
        if nonce_tracking and session_factory is None:
            raise ValueError("nonce tracking needs a session_factory")
        self.window = window
        self.nonce_tracking = nonce_tracking
        self.session_factory = session_factory

    def accept(
        self,
        timestamp: datetime,
        now: Optional[datetime] = None,
        api_key: Optional[str] = None,
        signature: Optional[str] = None,
        raw_timestamp: Optional[str] = None,
    ) -> bool:
        now = now or datetime.now(UTC)
        skew = abs(now - timestamp)
        if skew > self.window:
            logger.warning("Rejected stale request api_key=%s skew=%s", api_key, skew)
            raise StaleRequest(f"timestamp outside the {int(self.window.total_seconds())}s window")
        if self.nonce_tracking:
            self._remember(
                api_key or "",
                raw_timestamp or timestamp.isoformat(),
                signature or "",
                expires_at=timestamp + self.window,
                now=now,
            )
        return True

    def _remember(self, api_key: str, raw_timestamp: str, signature: str, expires_at: datetime, now: datetime) -> None:
        # a triple can only come back while its timestamp is still fresh
        with self.session_factory() as db:
            db.query(SeenSignature).filter(SeenSignature.expires_at < to_naive_utc(now)).delete()
            db.add(
                SeenSignature(
                    api_key=api_key,
                    timestamp=raw_timestamp,
                    signature=signature,
                    expires_at=to_naive_utc(expires_at),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning("Rejected replayed request api_key=%s timestamp=%s", api_key, raw_timestamp)
                raise ReplayedRequest("request was already processed") from None
