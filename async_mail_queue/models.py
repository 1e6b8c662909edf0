"""Data types shared by the queue, the scheduler and the adapters.

Models:
    - MessageState: lifecycle states of a queued message
    - QueuedMessage: one notification awaiting delivery
    - DeliveryResult: outcome returned by a transport
    - QueueStats: per-state counters used by dashboards
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class MessageState(str, Enum):
    """Lifecycle states of a :class:`QueuedMessage`.

    Attributes:
        PENDING: Waiting to be selected by the scheduler.
        IN_FLIGHT: Selected for the current batch, delivery in progress.
        SENT: Delivered (terminal).
        FAILED: Retries exhausted (terminal, re-enterable via operator retry).
    """

    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageState.SENT, MessageState.FAILED)


@dataclass
class QueuedMessage:
    """A notification held by :class:`~async_mail_queue.queue.DeliveryQueue`.

    ``recipients``, ``subject``, ``payload`` and ``template`` are opaque to the
    queue and are handed to the transport untouched.
    """

    id: str
    recipients: List[str]
    subject: str
    payload: Any = field(default_factory=dict)
    template: Optional[str] = None
    attempts: int = 0
    state: MessageState = MessageState.PENDING
    created_at: float = 0.0
    processed_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def recipient_summary(self) -> str:
        """Return the recipients as a comma separated string."""
        return ", ".join(self.recipients)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single :meth:`Transport.deliver` call.

    ``permanent`` lets a transport flag failures that no retry can fix
    (rejected recipient, unknown template).
    """

    ok: bool
    reason: Optional[str] = None
    permanent: bool = False

    @classmethod
    def success(cls) -> "DeliveryResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str, *, permanent: bool = False) -> "DeliveryResult":
        return cls(ok=False, reason=reason or "Unknown error", permanent=permanent)


@dataclass(frozen=True)
class QueueStats:
    total: int = 0
    pending: int = 0
    in_flight: int = 0
    sent: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        """Return the dashboard shape, where in-flight is reported as ``processing``."""
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.in_flight,
            "sent": self.sent,
            "failed": self.failed,
        }
