import asyncio
from datetime import datetime
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from igsp_hub.ledger import WalletLedger
from igsp_hub.logging_config import get_logger
from igsp_hub.sessions import SessionRegistry

logger = get_logger(__name__)


def run_expiry(registry: SessionRegistry, ledger: WalletLedger, now: Optional[datetime] = None) -> dict:
    """
    Expire idle sessions and release holds of abandoned rounds.
    """
    expired = registry.expire_idle(now)
    released = ledger.release_stale_rounds(now)
    if expired or released:
        logger.info("Expiry sweep expired_sessions=%s released_rounds=%s", len(expired), released)
    return {"expiredSessions": expired, "releasedRounds": released}


async def background_expiry_worker(registry: SessionRegistry, ledger: WalletLedger, interval_seconds: float):
    while True:
        try:
            await run_in_threadpool(run_expiry, registry, ledger)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Expiry sweep failed: error=%s next_run_in=%ss", exc, interval_seconds)
        await asyncio.sleep(interval_seconds)
