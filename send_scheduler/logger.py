"""Logging helpers for the send scheduler."""

import logging
from typing import Optional

ROOT_LOGGER_NAME = "SendScheduler"


def get_logger(component: Optional[str] = None) -> logging.Logger:
    """Return the service logger, or the child logger for ``component``.

    Components log under ``SendScheduler.<component>`` so that a single
    level set in main.py (``SND_LOG_LEVEL``) governs dispatch, control and
    maintenance output alike. Handlers are never attached here.
    """
    if not component:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
