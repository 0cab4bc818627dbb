import secrets
import time
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from igsp_hub.catalog import CurrencyCatalog, GameCatalog
from igsp_hub.config import HookAction, SessionStatus, settings
from igsp_hub.errors import InactiveSession, SessionConflict, UnknownSession, ValidationError
from igsp_hub.helpers import hash_request, serialize_session, to_naive_utc, utcnow
from igsp_hub.locks import KeyedLock
from igsp_hub.logging_config import get_logger
from igsp_hub.models import Account, GameSession
from igsp_hub.schemas.hooks import SessionCreateRequest

logger = get_logger(__name__)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(deadline - time.monotonic(), 0)


@dataclass(frozen=True)
class SessionResult:
    session_id: str
    launch_url: str
    status: str
    created: bool


class SessionRegistry:
    """
    Lifecycle of game-launch sessions: CREATED -> LAUNCHED -> EXPIRED | CLOSED.

    ``session_id`` is chosen by the caller, so creation is idempotent: a retry
    carrying the same payload gets the launch URL issued the first time, a
    different payload under the same id is a conflict.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        games: GameCatalog,
        currencies: CurrencyCatalog,
        account_locks: KeyedLock,
        launch_base_url: Optional[str] = None,
        idle_timeout: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.games = games
        self.currencies = currencies
        self.account_locks = account_locks
        self.launch_base_url = str(launch_base_url or settings.launch_base_url).rstrip("/")
        self.idle_timeout = idle_timeout or timedelta(seconds=settings.session_idle_timeout_seconds)
        self._locks = KeyedLock("session")

    def create_session(self, request: SessionCreateRequest, lock_timeout: Optional[float] = None) -> SessionResult:
        self.games.require_launchable(request.game_id, request.currency)
        if request.balance < 0:
            raise ValidationError("balance must not be negative")
        self.currencies.validate_amount(request.balance, request.currency, field="balance")
        request_hash = hash_request(request.canonical())
        deadline = None if lock_timeout is None else time.monotonic() + lock_timeout

        with self._locks.hold(request.session_id, lock_timeout):
            # session row and opening balance commit together
            account_lock = (
                nullcontext()
                if request.is_demo
                else self.account_locks.hold((request.player_id, request.currency), _remaining(deadline))
            )
            with account_lock, self.session_factory() as db:
                existing = db.get(GameSession, request.session_id)
                if existing is not None:
                    return self._resolve_existing(existing, request_hash)
                record = GameSession(
                    session_id=request.session_id,
                    game_id=request.game_id,
                    player_id=request.player_id,
                    currency=request.currency,
                    initial_balance=request.balance,
                    device=request.device,
                    language=request.language,
                    return_url=request.return_url,
                    is_demo=request.is_demo,
                    status=SessionStatus.CREATED.value,
                    request_hash=request_hash,
                )
                db.add(record)
                db.flush()
                record.launch_url = self._launch_url(request)
                record.status = SessionStatus.LAUNCHED.value
                record.last_activity_at = utcnow()
                opened = False if request.is_demo else self._seed_account(db, request)
                try:
                    db.commit()
                except IntegrityError:
                    # another process won the insert
                    db.rollback()
                    existing = db.get(GameSession, request.session_id)
                    if existing is None:
                        raise
                    return self._resolve_existing(existing, request_hash)
                launch_url = record.launch_url

        logger.info(
            "Session launched session_id=%s game_id=%s player_id=%s currency=%s demo=%s",
            request.session_id,
            request.game_id,
            request.player_id,
            request.currency,
            request.is_demo,
        )
        if opened:
            logger.info(
                "Opened account player_id=%s currency=%s balance=%s", request.player_id, request.currency, request.balance
            )
        return SessionResult(request.session_id, launch_url, SessionStatus.LAUNCHED.value, created=True)

    def _resolve_existing(self, existing: GameSession, request_hash: str) -> SessionResult:
        if existing.request_hash != request_hash:
            logger.warning("Session conflict session_id=%s", existing.session_id)
            raise SessionConflict(f"session {existing.session_id} already exists with a different payload")
        logger.info("Session create retried session_id=%s status=%s", existing.session_id, existing.status)
        return SessionResult(existing.session_id, existing.launch_url, existing.status, created=False)

    def _launch_url(self, request: SessionCreateRequest) -> str:
        params = {
            "session": request.session_id,
            "token": secrets.token_urlsafe(24),
            "currency": request.currency,
            "lang": request.language,
            "device": request.device,
        }
        if request.is_demo:
            params["demo"] = "1"
        if request.return_url:
            params["return_url"] = request.return_url
        return f"{self.launch_base_url}/{request.game_id}?{urlencode(params)}"

    def _seed_account(self, db: Session, request: SessionCreateRequest) -> bool:
        exists = db.query(Account).filter_by(player_id=request.player_id, currency=request.currency).first()
        if exists is not None:
            return False
        db.add(Account(player_id=request.player_id, currency=request.currency, balance=request.balance, version=0))
        return True

    def require_wallet_session(
        self, db: Session, session_id: str, player_id: str, currency: str, action: HookAction
    ) -> GameSession:
        """
        Load the session a wallet hook refers to, inside the caller's DB
        transaction. Bets need a live session; wins and refunds settle rounds
        that may outlive it.
        """
        record = db.get(GameSession, session_id)
        if record is None:
            raise UnknownSession(f"session {session_id} does not exist")
        if record.player_id != player_id or record.currency != currency:
            raise ValidationError(f"session {session_id} belongs to another player or currency")
        if record.is_demo:
            raise ValidationError("demo sessions have no wallet")
        if action == HookAction.BET and record.status != SessionStatus.LAUNCHED.value:
            raise InactiveSession(f"session {session_id} is {record.status}")
        return record

    def expire(self, session_id: str, now: Optional[datetime] = None) -> bool:
        now = to_naive_utc(now) if now else utcnow()
        with self._locks.hold(session_id):
            with self.session_factory() as db:
                record = db.get(GameSession, session_id)
                if record is None:
                    raise UnknownSession(f"session {session_id} does not exist")
                if record.status != SessionStatus.LAUNCHED.value:
                    return False
                last_seen = record.last_activity_at or record.created_at
                if now - last_seen < self.idle_timeout:
                    return False
                record.status = SessionStatus.EXPIRED.value
                db.commit()
        logger.info("Session expired session_id=%s idle_since=%s", session_id, last_seen)
        return True

    def expire_idle(self, now: Optional[datetime] = None) -> list[str]:
        now = to_naive_utc(now) if now else utcnow()
        with self.session_factory() as db:
            candidates = [
                row.session_id
                for row in db.query(GameSession.session_id)
                .filter(GameSession.status == SessionStatus.LAUNCHED.value)
                .filter(GameSession.last_activity_at <= now - self.idle_timeout)
                .all()
            ]
        return [session_id for session_id in candidates if self.expire(session_id, now)]

    def close(self, session_id: str) -> dict:
        with self._locks.hold(session_id):
            with self.session_factory() as db:
                record = db.get(GameSession, session_id)
                if record is None:
                    raise UnknownSession(f"session {session_id} does not exist")
                if record.status == SessionStatus.EXPIRED.value:
                    raise InactiveSession(f"session {session_id} already expired")
                if record.status != SessionStatus.CLOSED.value:
                    record.status = SessionStatus.CLOSED.value
                    db.commit()
                    db.refresh(record)
                    logger.info("Session closed session_id=%s", session_id)
                return serialize_session(record)

    def get(self, session_id: str) -> dict:
        with self.session_factory() as db:
            record = db.get(GameSession, session_id)
            if record is None:
                raise UnknownSession(f"session {session_id} does not exist")
            return serialize_session(record)
