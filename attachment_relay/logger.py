"""Logging setup shared by the relay components."""

import logging

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(level_name: str = "INFO") -> int:
    """Configure the root handler once for the whole process; return the level applied.

    Unknown level names fall back to ``INFO``.
    """
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, force=True)
    return level


def get_logger(name: str = "AttachmentRelay") -> logging.Logger:
    """Return the named logger; handlers come from :func:`configure_logging`."""
    return logging.getLogger(name)
