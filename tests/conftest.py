import os
import sys
from datetime import timedelta
from decimal import Decimal
from importlib import reload
from pathlib import Path

import pytest
from pydantic import SecretStr
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from igsp_hub import models  # noqa: E402
from igsp_hub.catalog import CurrencyCatalog, GameCatalog  # noqa: E402
from igsp_hub.config import GameEntry  # noqa: E402
from igsp_hub.database import build_engine  # noqa: E402
from igsp_hub.ledger import WalletLedger  # noqa: E402
from igsp_hub.locks import KeyedLock  # noqa: E402
from igsp_hub.schemas.hooks import SessionCreateRequest  # noqa: E402
from igsp_hub.sessions import SessionRegistry  # noqa: E402

API_KEY = "provider-key"
SECRET = "s3cr3t-shared-key"

GAMES = {
    "book-of-gold": GameEntry(currencies=["USD", "EUR"]),
    "crash-rocket": GameEntry(currencies=["USD", "BTC"]),
    "retired-slot": GameEntry(enabled=False, currencies=["USD"]),
}
PRECISION = {"USD": 2, "EUR": 2, "JPY": 0, "BTC": 8}


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    models.Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def currencies():
    return CurrencyCatalog(PRECISION)


@pytest.fixture
def account_locks():
    return KeyedLock("account")


@pytest.fixture
def registry(session_factory, currencies, account_locks):
    return SessionRegistry(
        session_factory,
        GameCatalog(GAMES),
        currencies,
        account_locks,
        launch_base_url="https://games.test/launch",
        idle_timeout=timedelta(minutes=30),
    )


@pytest.fixture
def ledger(session_factory, registry, currencies, account_locks):
    return WalletLedger(
        session_factory,
        registry,
        currencies,
        account_locks,
        allow_overdraft=False,
        round_hold_timeout=timedelta(hours=1),
    )


def session_request(session_id="sess-1", player_id="player-1", currency="USD", balance="100.00", **overrides):
    body = {
        "action": "session-create",
        "session_id": session_id,
        "game_id": "book-of-gold",
        "player_id": player_id,
        "currency": currency,
        "balance": Decimal(balance),
    }
    body.update(overrides)
    return SessionCreateRequest(**body)


@pytest.fixture
def open_session(registry):
    def _open(session_id="sess-1", player_id="player-1", currency="USD", balance="100.00", **overrides):
        return registry.create_session(session_request(session_id, player_id, currency, balance, **overrides))

    return _open


@pytest.fixture
def app_module(tmp_path_factory):
    """
    Reload the app against a disposable SQLite DB with known credentials.
    """
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    new_env = {
        "DB_URL": f"sqlite:///{db_path}",
        "ADMIN_TOKEN": "admintoken",
        "API_CREDENTIALS": f'{{"{API_KEY}": "{SECRET}"}}',
        "GAMES": '{"book-of-gold": {"currencies": ["USD", "EUR"]}}',
        "CURRENCY_PRECISION": '{"USD": 2, "EUR": 2}',
        "LAUNCH_BASE_URL": "https://games.test/launch",
        "EXPIRY_SWEEP_INTERVAL_SECONDS": "0",
    }
    old_env = {k: os.environ.get(k) for k in new_env}
    os.environ.update(new_env)

    try:
        import igsp_hub.config as config
        import igsp_hub.database as database
        import igsp_hub.security as security
        import igsp_hub.main as main

        reload(config)
        reload(database)
        reload(security)
        reload(main)

        models.Base.metadata.drop_all(bind=database.engine)
        models.Base.metadata.create_all(bind=database.engine)
        return main, database
    finally:
        for key, value in old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def credentials():
    return {API_KEY: SecretStr(SECRET)}
