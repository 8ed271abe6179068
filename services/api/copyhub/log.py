"""
Logging setup shared by the API and the worker.
"""

import logging
import sys

FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Install one stdout handler on the ``copyhub`` logger tree."""
    logger = logging.getLogger("copyhub")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(FORMAT))
        logger.addHandler(handler)

    return logger


def token_prefix(token: str | None) -> str:
    if not token:
        return "none"
    return token[:8] + "..."
