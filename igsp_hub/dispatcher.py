import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Callable, Mapping, Optional, assert_never

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from igsp_hub.catalog import CurrencyCatalog, GameCatalog
from igsp_hub.config import Settings, settings as default_settings
from igsp_hub.credentials import CredentialStore
from igsp_hub.errors import Busy, HubError, Internal, InvalidCredentials, InvalidSignature, ValidationError
from igsp_hub.helpers import format_amount
from igsp_hub.ledger import WalletLedger
from igsp_hub.locks import KeyedLock
from igsp_hub.logging_config import get_logger
from igsp_hub.replay import ReplayGuard, parse_timestamp
from igsp_hub.schemas.hooks import (
    BalanceRequest,
    BalanceResponse,
    BetRequest,
    HookRequest,
    RefundRequest,
    SessionCreatedResponse,
    SessionCreateRequest,
    TransactionResponse,
    WinRequest,
    hook_request_adapter,
)
from igsp_hub.security import SignatureCodec, parse_signed_request
from igsp_hub.sessions import SessionRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class HookResponse:
    status_code: int
    body: dict


def _describe(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}" for error in exc.errors()
    )


class HookDispatcher:
    """
    Entry point for every signed hook. Stages run in a fixed order and the
    first failure ends the request: nothing reaches the registry or the ledger
    unless the signature, freshness and payload checks all passed.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        codec: SignatureCodec,
        guard: ReplayGuard,
        registry: SessionRegistry,
        ledger: WalletLedger,
        currencies: CurrencyCatalog,
        timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.credentials = credentials
        self.codec = codec
        self.guard = guard
        self.registry = registry
        self.ledger = ledger
        self.currencies = currencies
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    def handle(self, headers: Mapping[str, str], raw_body: bytes) -> HookResponse:
        started = time.monotonic()
        try:
            request = self.authenticate(headers, raw_body)
            status_code, body = self.dispatch(request, deadline=started + self.timeout_seconds)
            return HookResponse(status_code, body)
        except HubError as exc:
            log = logger.error if exc.status_code >= 500 else logger.warning
            log("Hook rejected code=%s status=%s message=%s", exc.code, exc.status_code, exc.message)
            return HookResponse(exc.status_code, exc.to_envelope())
        except SQLAlchemyError:
            logger.exception("Storage failure while handling hook")
            return HookResponse(503, Internal("storage unavailable, retry with the same identifiers").to_envelope())
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected failure while handling hook")
            return HookResponse(500, Internal("internal error").to_envelope())

    def authenticate(self, headers: Mapping[str, str], raw_body: bytes) -> HookRequest:
        signed = parse_signed_request(headers, raw_body)
        secret_key = self.credentials.secret_for(signed.api_key)
        if secret_key is None:
            raise InvalidCredentials("unknown api key")
        if not self.codec.verify(signed.raw_body, signed.timestamp, signed.signature, secret_key):
            raise InvalidSignature("signature does not match request body")
        self.guard.accept(
            parse_timestamp(signed.timestamp),
            now=self.clock(),
            api_key=signed.api_key,
            signature=signed.signature,
            raw_timestamp=signed.timestamp,
        )
        try:
            return hook_request_adapter.validate_json(raw_body)
        except PydanticValidationError as exc:
            raise ValidationError(_describe(exc)) from None

    def dispatch(self, request: HookRequest, deadline: float) -> tuple[int, dict]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise Busy("request could not be started within the time budget")
        match request:
            case SessionCreateRequest():
                result = self.registry.create_session(request, lock_timeout=remaining)
                return (201 if result.created else 200), SessionCreatedResponse(url=result.launch_url).model_dump()
            case BalanceRequest():
                result = self.ledger.apply(request)
                return 200, BalanceResponse(balance=self._render(result.balance, request.currency)).model_dump()
            case BetRequest() | WinRequest() | RefundRequest():
                result = self.ledger.apply(request, lock_timeout=remaining)
                return 200, TransactionResponse(
                    balance=self._render(result.balance, request.currency),
                    transaction_id=result.platform_transaction_id,
                ).model_dump()
            case _:
                assert_never(request)

    def _render(self, amount: Decimal, currency: str) -> str:
        return format_amount(amount, self.currencies.precision(currency))


def build_dispatcher(session_factory: sessionmaker, config: Optional[Settings] = None) -> HookDispatcher:
    config = config or default_settings
    currencies = CurrencyCatalog(config.currency_precision)
    account_locks = KeyedLock("account")
    registry = SessionRegistry(
        session_factory,
        GameCatalog(config.games),
        currencies,
        account_locks,
        launch_base_url=str(config.launch_base_url),
        idle_timeout=timedelta(seconds=config.session_idle_timeout_seconds),
    )
    ledger = WalletLedger(
        session_factory,
        registry,
        currencies,
        account_locks,
        allow_overdraft=config.allow_overdraft,
        round_hold_timeout=timedelta(seconds=config.round_hold_timeout_seconds),
    )
    guard = ReplayGuard(
        window=timedelta(seconds=config.signature_window_seconds),
        nonce_tracking=config.nonce_tracking,
        session_factory=session_factory,
    )
    return HookDispatcher(
        CredentialStore(config.api_credentials),
        SignatureCodec(),
        guard,
        registry,
        ledger,
        currencies,
        timeout_seconds=config.hook_timeout_seconds,
    )
