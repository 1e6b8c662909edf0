"""Logging helpers for the async mail queue."""

import logging


def get_logger(name: str = "AsyncMailQueue") -> logging.Logger:
    """Return the named :class:`logging.Logger` used by the queue.

    Note: handlers and levels are configured once through
    ``logging.basicConfig()`` in ``main.py`` to avoid duplicate handlers.
    """
    return logging.getLogger(name)
