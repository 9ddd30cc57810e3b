"""Logging configuration for the idea pipeline service."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_CONFIGURED = False


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the package logger.

    Calling this more than once only updates the level.
    """

    global _CONFIGURED
    logger = logging.getLogger("idea_pipeline")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if _CONFIGURED:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    _CONFIGURED = True


__all__ = ["configure_logging"]
