"""
Logging setup.

Modules log through ``logging.getLogger(__name__)`` with a bracketed
component tag (``[WEBHOOK]``, ``[ORCHESTRATOR]`` ...). This wires the root
logger once per process from settings.
"""

import logging
import sys

from backend.core.conf import settings

_configured = False


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger. Safe to call more than once."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(settings.LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or settings.LOG_STD_LEVEL).upper())

    # Third-party chatter
    for name in settings.LOG_QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
