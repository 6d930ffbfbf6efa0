import logging
import os
import sys
from typing import Optional


def configure_logging(name: str, level: Optional[str] = None) -> logging.Logger:
    """Stdout logger shared by the worker components; extras carry the structured fields."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    handler.setFormatter(formatter)

    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
