import hashlib
import json
from datetime import UTC, datetime
from decimal import Decimal

from igsp_hub.models import GameSession, Transaction


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()


def utcnow() -> datetime:
    # naive UTC, matching what the DateTime columns round-trip
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def fractional_digits(amount: Decimal) -> int:
    exponent = amount.normalize().as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def format_amount(amount: Decimal, precision: int) -> str:
    return str(Decimal(amount).quantize(Decimal(1).scaleb(-precision)))


def serialize_session(record: GameSession) -> dict:
    return {
        "sessionId": record.session_id,
        "gameId": record.game_id,
        "playerId": record.player_id,
        "currency": record.currency,
        "initialBalance": str(record.initial_balance),
        "device": record.device,
        "language": record.language,
        "isDemo": record.is_demo,
        "status": record.status,
        "launchUrl": record.launch_url,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "lastActivityAt": record.last_activity_at.isoformat() if record.last_activity_at else None,
    }


def serialize_transaction(record: Transaction) -> dict:
    return {
        "transactionId": record.transaction_id,
        "platformTransactionId": record.platform_transaction_id,
        "sessionId": record.session_id,
        "playerId": record.player_id,
        "currency": record.currency,
        "action": record.action,
        "amount": str(record.amount),
        "type": record.type,
        "roundId": record.round_id,
        "betTransactionId": record.bet_transaction_id,
        "resultingBalance": str(record.resulting_balance),
        "status": record.status,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }
