from igsp_hub import models
from igsp_hub.config import settings
from igsp_hub.database import SessionLocal, engine
from igsp_hub.dispatcher import build_dispatcher
from igsp_hub.logging_config import get_logger
from igsp_hub.scheduler import run_expiry

logger = get_logger(__name__)


def expire_sessions() -> int:
    models.Base.metadata.create_all(bind=engine)
    dispatcher = build_dispatcher(SessionLocal, settings)
    summary = run_expiry(dispatcher.registry, dispatcher.ledger)
    logger.info(
        "Expired %s sessions, released %s rounds",
        len(summary["expiredSessions"]),
        summary["releasedRounds"],
    )
    return 0

if __name__ == "__main__":
    raise SystemExit(expire_sessions())
