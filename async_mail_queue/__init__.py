"""In-process notification delivery queue with batching, rate limiting and retries.

This package provides:

- An in-memory queue with an explicit message state machine
  (pending, in-flight, sent, failed)
- A periodic batch scheduler with a messages-per-minute ceiling
- A bounded retry policy with terminal failure reporting
- SMTP delivery through aiosmtplib with jinja2 templates
- A best-effort SQLite delivery log
- Prometheus metrics and a FastAPI operator API

Example:
    Basic usage with the FastAPI application::

        from async_mail_queue.core import AsyncMailQueue
        from async_mail_queue.transport import SMTPTransport
        from async_mail_queue.api import create_app

        queue = AsyncMailQueue(SMTPTransport("smtp.example.com"))
        app = create_app(queue, api_token="secret")
"""

from .core import AsyncMailQueue
from .models import DeliveryResult, MessageState, QueuedMessage, QueueStats
from .queue import DeliveryQueue, InvalidMessageError, InvalidTransitionError

__all__ = [
    "AsyncMailQueue",
    "DeliveryQueue",
    "DeliveryResult",
    "InvalidMessageError",
    "InvalidTransitionError",
    "MessageState",
    "QueuedMessage",
    "QueueStats",
]
