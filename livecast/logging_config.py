import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from . import config


def setup_logging() -> logging.Logger:
    """Set up logging."""
    logger = logging.getLogger("livecast")
    logger.setLevel(logging.DEBUG if config.DEBUG else logging.INFO)

    if not config.LOG_ENABLED:
        logger.handlers.clear()
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    if logger.handlers:
        return logger

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    level = logging.DEBUG if config.DEBUG else logging.INFO

    os.makedirs(os.path.dirname(config.LOG_FILE), exist_ok=True)
    file_handler = RotatingFileHandler(config.LOG_FILE, maxBytes=2_000_000, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)

    console = None
    if config.CONSOLE_LOG:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(fmt)
        console.setLevel(level)
        logger.addHandler(console)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        ul = logging.getLogger(name)
        ul.handlers.clear()
        ul.propagate = False
        ul.setLevel(level)
        ul.addHandler(file_handler)
        if console is not None:
            ul.addHandler(console)

    return logger


log = setup_logging()

