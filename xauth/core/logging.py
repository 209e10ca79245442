"""
Logging setup shared by the hosted app, the loopback listener and CLI tools.
"""

import logging
import sys
from typing import Iterable

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Loggers that emit one INFO line per request.
_CHATTY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def configure_logging(level: str = "INFO", *, quiet: Iterable[str] = _CHATTY_LOGGERS) -> None:
    """Configure root logging once; token values must only be logged masked."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stdout)
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["LOG_FORMAT", "configure_logging"]
