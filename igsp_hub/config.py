from enum import Enum
from pydantic import AnyHttpUrl, BaseModel, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class GameEntry(BaseModel):
    enabled: bool = True
    currencies: list[str] = []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    db_url: str = "sqlite:///./igsp_hub.db"
    log_level: str = "INFO"
    admin_token: Optional[str] = None
    # api_key -> secret_key, one pair per provider/platform relationship
    api_credentials: dict[str, SecretStr] = {"demo-provider": SecretStr("change_secret")}
    signature_window_seconds: int = 300
    nonce_tracking: bool = False
    hook_timeout_seconds: float = 2.0
    allow_overdraft: bool = False
    session_idle_timeout_seconds: int = 1800
    round_hold_timeout_seconds: int = 3600
    expiry_sweep_interval_seconds: int = 0
    launch_base_url: AnyHttpUrl = "https://games.example.com/launch"
    currency_precision: dict[str, int] = {"USD": 2, "EUR": 2, "GBP": 2, "JPY": 0, "BTC": 8}
    games: dict[str, GameEntry] = {
        "book-of-gold": GameEntry(currencies=["USD", "EUR", "GBP"]),
        "crash-rocket": GameEntry(currencies=["USD", "EUR", "BTC"]),
    }
    # outbound hook client
    provider_base_url: AnyHttpUrl = "http://localhost:8000"
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    rate_limit_per_minute: int = 600

settings = Settings()


class HookAction(str, Enum):
    SESSION_CREATE = "session-create"
    BALANCE = "balance"
    BET = "bet"
    WIN = "win"
    REFUND = "refund"


class SessionStatus(str, Enum):
    CREATED = "CREATED"
    LAUNCHED = "LAUNCHED"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"


class TransactionStatus(str, Enum):
    APPLIED = "APPLIED"
    VOIDED = "VOIDED"
