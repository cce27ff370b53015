import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import settings

logger = logging.getLogger("dockback")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def setup_logging(log_file=None, level=None):
    if logger.handlers:
        return logger
    log_file = log_file or settings.dockback_log_file
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level or settings.dockback_log_level.upper())
    logger.propagate = False
    return logger


def log_event(event, level=logging.INFO, **fields):
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    logger.log(level, f"{event} {details}" if details else event)
