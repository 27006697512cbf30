import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

from .config import Settings, settings as default_settings


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """
    Configures structured logging for the threat engine.
    Uses JSON formatting in production, standard formatting in development.
    """
    settings = settings or default_settings
    logger = logging.getLogger()

    # clear existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if settings.ENVIRONMENT == "production":
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            json_ensure_ascii=False
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(settings.LOG_LEVEL)

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("nats").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logger
