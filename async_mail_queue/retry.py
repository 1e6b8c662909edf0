"""Bounded retry policy and delivery error classification."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Tuple

import aiosmtplib

from .models import MessageState, QueuedMessage

DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class RetryDecision:
    """What should happen to a message after a failed attempt."""

    next_state: MessageState
    attempts: int
    error: str

    @property
    def exhausted(self) -> bool:
        return self.next_state is MessageState.FAILED


class RetryPolicy:
    """Decide whether a failed message goes back to ``pending`` or becomes ``failed``.

    :meth:`on_failure` is the only place where the attempt counter grows, and
    the scheduler calls it exactly once per failed delivery attempt.
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES, *, short_circuit_permanent: bool = False):
        if int(max_retries) < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = int(max_retries)
        self.short_circuit_permanent = bool(short_circuit_permanent)

    def on_failure(self, message: QueuedMessage, error: Optional[str], *, permanent: bool = False) -> RetryDecision:
        """Return the next state for ``message`` after a failed attempt."""
        attempts = message.attempts + 1
        reason = error or "Unknown error"
        if attempts < self.max_retries and not (permanent and self.short_circuit_permanent):
            return RetryDecision(MessageState.PENDING, attempts, reason)
        return RetryDecision(MessageState.FAILED, attempts, reason)


def classify_delivery_error(exc: BaseException) -> Tuple[bool, Optional[int]]:
    """
    Classify a transport exception as permanent or transient.

    Returns:
        tuple: (is_permanent, smtp_code)
            - is_permanent: True when retrying cannot succeed (SMTP 5xx)
            - smtp_code: The SMTP reply code if available, None otherwise
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None) or getattr(exc, "smtp_code", None)

    # Network and timeout errors are transient
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return False, smtp_code

    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        return True, smtp_code

    if smtp_code:
        if 400 <= smtp_code < 500:
            return False, smtp_code
        if 500 <= smtp_code < 600:
            return True, smtp_code

    # Unknown errors stay transient so they consume the retry budget
    return False, smtp_code
