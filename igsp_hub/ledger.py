"""
The authoritative wallet: one balance per (player, currency), mutated only
by bet, win and refund hooks.

Every money movement runs under the account's lock and inside one database
transaction:

1. look the ``transaction_id`` up; a match is a retry and gets the stored
   result back, a mismatch is a ``TransactionIdConflict``;
2. check the session and load the account ``FOR UPDATE``;
3. apply the movement, bump ``version``, record the transaction;
4. commit.

A unique constraint on ``transaction_id`` backs the lookup in step 1 for the
case where the same id is sent for two different accounts at once.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, assert_never

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from igsp_hub.catalog import CurrencyCatalog
from igsp_hub.config import HookAction, TransactionStatus, settings
from igsp_hub.errors import (
    AlreadyRefunded,
    InsufficientFunds,
    TransactionIdConflict,
    UnknownReferencedTransaction,
    ValidationError,
)
from igsp_hub.helpers import hash_request, to_naive_utc, utcnow
from igsp_hub.locks import KeyedLock
from igsp_hub.logging_config import get_logger
from igsp_hub.models import Account, Round, Transaction
from igsp_hub.schemas.hooks import BalanceRequest, BetRequest, RefundRequest, WalletRequest, WinRequest
from igsp_hub.sessions import SessionRegistry

logger = get_logger(__name__)

ZERO = Decimal(0)


@dataclass(frozen=True)
class LedgerResult:
    balance: Decimal
    platform_transaction_id: Optional[str] = None
    replayed: bool = False


def new_platform_transaction_id() -> str:
    return f"PTX-{uuid.uuid4().hex[:20].upper()}"


class WalletLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        registry: SessionRegistry,
        currencies: CurrencyCatalog,
        account_locks: KeyedLock,
        allow_overdraft: Optional[bool] = None,
        round_hold_timeout: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.currencies = currencies
        self.account_locks = account_locks
        self.allow_overdraft = settings.allow_overdraft if allow_overdraft is None else allow_overdraft
        self.round_hold_timeout = round_hold_timeout or timedelta(seconds=settings.round_hold_timeout_seconds)

    def apply(self, request: WalletRequest, lock_timeout: Optional[float] = None) -> LedgerResult:
        match request:
            case BalanceRequest():
                return self.balance(request)
            case BetRequest() | WinRequest() | RefundRequest():
                return self._move(request, lock_timeout)
            case _:
                assert_never(request)

    def balance(self, request: BalanceRequest) -> LedgerResult:
        self.currencies.precision(request.currency)
        with self.session_factory() as db:
            if request.session_id:
                session = self.registry.require_wallet_session(
                    db, request.session_id, request.player_id, request.currency, HookAction.BALANCE
                )
                session.last_activity_at = utcnow()
                db.commit()
            account = db.query(Account).filter_by(player_id=request.player_id, currency=request.currency).first()
            if account is None:
                return LedgerResult(ZERO)
            return LedgerResult(account.balance - self._reserved(db, request.player_id, request.currency))

    def _move(self, request: BetRequest | WinRequest | RefundRequest, lock_timeout: Optional[float]) -> LedgerResult:
        self.currencies.precision(request.currency)
        if request.amount is not None:
            self.currencies.validate_amount(request.amount, request.currency)
        request_hash = hash_request(request.canonical())

        with self.account_locks.hold((request.player_id, request.currency), lock_timeout):
            with self.session_factory() as db:
                stored = self._stored_result(db, request.transaction_id, request_hash)
                if stored is not None:
                    return stored
                session = self.registry.require_wallet_session(
                    db, request.session_id, request.player_id, request.currency, HookAction(request.action)
                )
                account = self._lock_account(db, request.player_id, request.currency)
                if isinstance(request, BetRequest):
                    amount = self._bet(db, account, request)
                elif isinstance(request, WinRequest):
                    amount = self._win(db, account, request)
                else:
                    amount = self._refund(db, account, request)
                account.version += 1
                session.last_activity_at = utcnow()
                db.flush()
                resulting_balance = account.balance - self._reserved(db, request.player_id, request.currency)
                txn = Transaction(
                    transaction_id=request.transaction_id,
                    platform_transaction_id=new_platform_transaction_id(),
                    session_id=request.session_id,
                    player_id=request.player_id,
                    currency=request.currency,
                    action=request.action,
                    amount=amount,
                    type=request.type,
                    round_id=request.round_id,
                    bet_transaction_id=getattr(request, "bet_transaction_id", None),
                    resulting_balance=resulting_balance,
                    status=TransactionStatus.APPLIED.value,
                    request_hash=request_hash,
                )
                db.add(txn)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    stored = self._stored_result(db, request.transaction_id, request_hash)
                    if stored is not None:
                        return stored
                    if isinstance(request, RefundRequest):
                        raise AlreadyRefunded(f"bet {request.bet_transaction_id} is already refunded") from None
                    raise
                result = LedgerResult(resulting_balance, txn.platform_transaction_id)
                version = account.version

        logger.info(
            "Applied %s transaction_id=%s platform_transaction_id=%s player_id=%s currency=%s amount=%s balance=%s version=%s",
            request.action,
            request.transaction_id,
            result.platform_transaction_id,
            request.player_id,
            request.currency,
            amount,
            result.balance,
            version,
        )
        return result

    def _stored_result(self, db: Session, transaction_id: str, request_hash: str) -> Optional[LedgerResult]:
        existing = db.query(Transaction).filter_by(transaction_id=transaction_id).first()
        if existing is None:
            return None
        if existing.request_hash != request_hash:
            logger.warning("Transaction id conflict transaction_id=%s action=%s", transaction_id, existing.action)
            raise TransactionIdConflict(f"transaction {transaction_id} was already used for a different request")
        logger.info(
            "Replayed transaction_id=%s platform_transaction_id=%s",
            transaction_id,
            existing.platform_transaction_id,
        )
        return LedgerResult(existing.resulting_balance, existing.platform_transaction_id, replayed=True)

    def _lock_account(self, db: Session, player_id: str, currency: str) -> Account:
        account = (
            db.query(Account)
            .filter_by(player_id=player_id, currency=currency)
            .with_for_update()
            .first()
        )
        if account is None:
            account = Account(player_id=player_id, currency=currency, balance=ZERO, version=0)
            db.add(account)
            db.flush()
        return account

    def _bet(self, db: Session, account: Account, request: BetRequest) -> Decimal:
        held_elsewhere = self._reserved(db, account.player_id, account.currency, exclude_round=request.round_id)
        if not self.allow_overdraft and account.balance - held_elsewhere < request.amount:
            logger.info(
                "Insufficient funds transaction_id=%s player_id=%s amount=%s",
                request.transaction_id,
                account.player_id,
                request.amount,
            )
            raise InsufficientFunds(f"balance does not cover {request.amount} {request.currency}")
        account.balance -= request.amount
        if request.round_id:
            game_round = self._round(db, request.round_id, account, request.session_id)
            # the round may stake what it is already holding
            game_round.reserved -= min(game_round.reserved, request.amount)
            self._settle_round(game_round, request.finished)
        return request.amount

    def _win(self, db: Session, account: Account, request: WinRequest) -> Decimal:
        account.balance += request.amount
        if request.round_id:
            game_round = self._round(db, request.round_id, account, request.session_id)
            if not request.finished:
                game_round.reserved += request.amount
            self._settle_round(game_round, request.finished)
        return request.amount

    def _refund(self, db: Session, account: Account, request: RefundRequest) -> Decimal:
        bet = (
            db.query(Transaction)
            .filter_by(transaction_id=request.bet_transaction_id)
            .with_for_update()
            .first()
        )
        if (
            bet is None
            or bet.action != HookAction.BET.value
            or bet.player_id != account.player_id
            or bet.currency != account.currency
        ):
            raise UnknownReferencedTransaction(f"no bet {request.bet_transaction_id} for this account")
        if bet.status == TransactionStatus.VOIDED.value:
            raise AlreadyRefunded(f"bet {request.bet_transaction_id} is already refunded")
        if request.amount is not None and request.amount != bet.amount:
            raise ValidationError(f"refund amount {request.amount} does not match bet amount {bet.amount}")
        account.balance += bet.amount
        bet.status = TransactionStatus.VOIDED.value
        return bet.amount

    def _round(self, db: Session, round_id: str, account: Account, session_id: str) -> Round:
        game_round = (
            db.query(Round)
            .filter_by(player_id=account.player_id, currency=account.currency, round_id=round_id)
            .first()
        )
        if game_round is None:
            game_round = Round(
                round_id=round_id,
                player_id=account.player_id,
                currency=account.currency,
                session_id=session_id,
                finished=False,
                reserved=ZERO,
                updated_at=utcnow(),
            )
            db.add(game_round)
        return game_round

    @staticmethod
    def _settle_round(game_round: Round, finished: bool) -> None:
        game_round.updated_at = utcnow()
        if finished:
            game_round.finished = True
            game_round.reserved = ZERO
        else:
            game_round.finished = False

    @staticmethod
    def _reserved(db: Session, player_id: str, currency: str, exclude_round: Optional[str] = None) -> Decimal:
        query = db.query(Round).filter_by(player_id=player_id, currency=currency, finished=False)
        if exclude_round:
            query = query.filter(Round.round_id != exclude_round)
        return sum((r.reserved for r in query.all()), ZERO)

    def release_stale_rounds(self, now: Optional[datetime] = None) -> int:
        """
        Release holds of rounds that saw no finishing event within the hold
        timeout. Returns how many rounds were released.
        """
        cutoff = (to_naive_utc(now) if now else utcnow()) - self.round_hold_timeout
        with self.session_factory() as db:
            accounts = {
                (row.player_id, row.currency)
                for row in db.query(Round.player_id, Round.currency)
                .filter(Round.finished.is_(False))
                .filter(Round.updated_at <= cutoff)
                .all()
            }
        released = 0
        for player_id, currency in sorted(accounts):
            with self.account_locks.hold((player_id, currency)):
                with self.session_factory() as db:
                    stale = (
                        db.query(Round)
                        .filter_by(player_id=player_id, currency=currency, finished=False)
                        .filter(Round.updated_at <= cutoff)
                        .all()
                    )
                    for game_round in stale:
                        logger.info(
                            "Releasing stale round round_id=%s player_id=%s reserved=%s",
                            game_round.round_id,
                            player_id,
                            game_round.reserved,
                        )
                        game_round.finished = True
                        game_round.reserved = ZERO
                    db.commit()
                    released += len(stale)
        return released
