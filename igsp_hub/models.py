from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from igsp_hub.database import Base


class Money(TypeDecorator):
    """
    Exact decimal column. SQLite has no fixed-point type, so values are kept
    there as text; other backends get NUMERIC(28, 8).
    """

    impl = Numeric(28, 8, asdecimal=True)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(40))
        return dialect.type_descriptor(Numeric(28, 8, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        return str(value) if dialect.name == "sqlite" else value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


MONEY = Money()


class GameSession(Base):
    __tablename__ = "game_sessions"
    session_id = Column(String, primary_key=True)
    game_id = Column(String, nullable=False)
    player_id = Column(String, index=True, nullable=False)
    currency = Column(String, nullable=False)
    initial_balance = Column(MONEY, nullable=False)
    device = Column(String, nullable=False)
    language = Column(String, nullable=False)
    return_url = Column(String, nullable=True)
    is_demo = Column(Boolean, nullable=False, default=False)
    status = Column(String, index=True, nullable=False)  # CREATED|LAUNCHED|EXPIRED|CLOSED
    launch_url = Column(String, nullable=True)
    request_hash = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    last_activity_at = Column(DateTime, nullable=True)


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    player_id = Column(String, nullable=False)
    currency = Column(String, nullable=False)
    balance = Column(MONEY, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    __table_args__ = (UniqueConstraint("player_id", "currency", name="uq_account_player_currency"),)


class Transaction(Base):
    __tablename__ = "wallet_transactions"
    id = Column(Integer, primary_key=True)
    transaction_id = Column(String, unique=True, index=True, nullable=False)
    platform_transaction_id = Column(String, unique=True, nullable=False)
    session_id = Column(String, index=True, nullable=False)
    player_id = Column(String, index=True, nullable=False)
    currency = Column(String, nullable=False)
    action = Column(String, nullable=False)  # bet|win|refund
    amount = Column(MONEY, nullable=False)
    type = Column(String, nullable=True)
    round_id = Column(String, nullable=True)
    # only refunds carry it; one refund per bet
    bet_transaction_id = Column(String, unique=True, nullable=True)
    resulting_balance = Column(MONEY, nullable=False)
    status = Column(String, nullable=False)  # APPLIED|VOIDED
    request_hash = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Round(Base):
    __tablename__ = "game_rounds"
    id = Column(Integer, primary_key=True)
    round_id = Column(String, nullable=False)
    player_id = Column(String, nullable=False)
    currency = Column(String, nullable=False)
    session_id = Column(String, nullable=False)
    finished = Column(Boolean, nullable=False, default=False)
    reserved = Column(MONEY, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False)
    __table_args__ = (UniqueConstraint("player_id", "currency", "round_id", name="uq_round_account"),)


class SeenSignature(Base):
    __tablename__ = "seen_signatures"
    id = Column(Integer, primary_key=True)
    api_key = Column(String, nullable=False)
    timestamp = Column(String, nullable=False)
    signature = Column(String, nullable=False)
    expires_at = Column(DateTime, index=True, nullable=False)
    __table_args__ = (UniqueConstraint("api_key", "timestamp", "signature", name="uq_seen_signature"),)
