import logging

from igsp_hub.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger; the level comes from LOG_LEVEL.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(settings.log_level.upper())
    return logger
