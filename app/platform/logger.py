import logging
import os
from logging.handlers import RotatingFileHandler

from app.platform.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _log_file_path() -> str:
    log_dir = settings.LOG_DIR or os.path.join(os.getcwd(), "logs")
    os.makedirs(log_dir, exist_ok=True)
    return os.path.join(log_dir, "a11y_audit.log")


def get_logger(name: str):
    """
    Logger that writes to the console and to a rotating file.

    API processes, Celery tasks and standalone workers all log through here,
    so a scan can be followed by its [scan_id] prefix across processes.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    if settings.LOG_TO_FILE:
        file_handler = RotatingFileHandler(_log_file_path(), maxBytes=10_000_000, backupCount=5)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    # Celery installs its own root handlers
    logger.propagate = False

    return logger
