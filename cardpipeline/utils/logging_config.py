from __future__ import annotations

import logging
import os

DEFAULT_LOG_LEVEL = os.getenv("CARDPIPELINE_LOG_LEVEL", "INFO").upper()
# batched model calls run on worker threads; the thread name ties a log line to its unit
LOG_FORMAT = os.getenv("CARDPIPELINE_LOG_FORMAT", "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s")


def get_logger(name: str, level: int | str | None = None) -> logging.Logger:
    """Module logger with a single stream handler.

    Records do not propagate, so a Celery worker's root handler does not print them twice.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(level or DEFAULT_LOG_LEVEL)
    return logger


__all__ = ["get_logger"]
