"""
Logging setup shared by the API server and background loops.

Call ``setup_logging()`` once at process start; modules then use
``logging.getLogger(__name__)`` as usual.
"""

import logging
import os

_CONFIGURED = False

# Chatty third-party loggers that drown out our own output at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "urllib3")


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger (idempotent)."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _CONFIGURED = True
