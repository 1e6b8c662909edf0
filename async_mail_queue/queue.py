"""In-memory delivery queue and message state machine."""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Iterable, List, Optional, Union

from .history import EVENT_QUEUED, BestEffortHistory, HistoryEvent
from .logger import get_logger
from .models import MessageState, QueuedMessage, QueueStats
from .retry import RetryDecision

# Transitions the scheduler is allowed to perform. Operator retries
# (failed -> pending) go through ``retry_one`` instead.
_ALLOWED_TRANSITIONS = {
    (MessageState.PENDING, MessageState.IN_FLIGHT),
    (MessageState.IN_FLIGHT, MessageState.SENT),
    (MessageState.IN_FLIGHT, MessageState.PENDING),
    (MessageState.IN_FLIGHT, MessageState.FAILED),
}


class InvalidMessageError(ValueError):
    """Raised by :meth:`DeliveryQueue.enqueue` when a request cannot be queued."""

    def __init__(self, message: str = "Invalid message"):
        super().__init__(message)
        self.code = "invalid_message"


class InvalidTransitionError(RuntimeError):
    """Raised when a message is asked to move along an edge the state machine forbids."""

    def __init__(self, message_id: str, current: MessageState, target: MessageState):
        super().__init__(f"Message {message_id}: cannot move from {current.value} to {target.value}")
        self.message_id = message_id
        self.current = current
        self.target = target


def _normalise_recipients(value: Union[str, Iterable[str], None]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    else:
        items = [str(item).strip() for item in value if item]
    return [item for item in items if item]


class DeliveryQueue:
    """Own the queued messages and every state transition applied to them.

    All mutations happen on the event loop thread (request handlers and the
    scheduler task), so the queue needs no locking. Insertion order of the
    underlying ``OrderedDict`` is the enqueue order used for batch selection.
    """

    def __init__(
        self,
        *,
        history: BestEffortHistory | None = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.logger = logger or get_logger()
        self.history = history or BestEffortHistory(logger=self.logger)
        self.clock = clock
        self._messages: "OrderedDict[str, QueuedMessage]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    # ------------------------------------------------------------------ producer
    def _generate_id(self) -> str:
        return f"email_{int(self.clock() * 1000)}_{uuid.uuid4().hex[:9]}"

    def enqueue(
        self,
        recipients: Union[str, Iterable[str]],
        subject: str,
        payload: Any = None,
        template: Optional[str] = None,
    ) -> str:
        """Queue a notification and return its id.

        Raises :class:`InvalidMessageError` when recipients or subject are
        missing; such a request never enters the queue. ``payload`` is stored
        as given and only interpreted by the transport.
        """
        targets = _normalise_recipients(recipients)
        if not targets:
            raise InvalidMessageError("missing recipients")
        if not subject or not str(subject).strip():
            raise InvalidMessageError("missing subject")

        message = QueuedMessage(
            id=self._generate_id(),
            recipients=targets,
            subject=str(subject),
            payload={} if payload is None else payload,
            template=template,
            created_at=self.clock(),
        )
        self._messages[message.id] = message
        self.history.emit(HistoryEvent.from_message(EVENT_QUEUED, message))
        return message.id

    # ------------------------------------------------------------------- readers
    def get(self, message_id: str) -> Optional[QueuedMessage]:
        return self._messages.get(message_id)

    def list_by_state(self, state: Union[MessageState, str]) -> List[QueuedMessage]:
        """Return the messages currently in ``state``, in enqueue order."""
        wanted = MessageState(state)
        return [msg for msg in self._messages.values() if msg.state is wanted]

    def stats(self) -> QueueStats:
        counts = {state: 0 for state in MessageState}
        for msg in self._messages.values():
            counts[msg.state] += 1
        return QueueStats(
            total=len(self._messages),
            pending=counts[MessageState.PENDING],
            in_flight=counts[MessageState.IN_FLIGHT],
            sent=counts[MessageState.SENT],
            failed=counts[MessageState.FAILED],
        )

    # ----------------------------------------------------------------- scheduler
    def _transition(self, message: QueuedMessage, target: MessageState) -> None:
        if (message.state, target) not in _ALLOWED_TRANSITIONS:
            raise InvalidTransitionError(message.id, message.state, target)
        message.state = target

    def take_batch(self, limit: int) -> List[QueuedMessage]:
        """Move up to ``limit`` pending messages to ``in-flight`` and return them."""
        batch: List[QueuedMessage] = []
        if limit <= 0:
            return batch
        for msg in self._messages.values():
            if msg.state is not MessageState.PENDING:
                continue
            self._transition(msg, MessageState.IN_FLIGHT)
            batch.append(msg)
            if len(batch) >= limit:
                break
        return batch

    def mark_sent(self, message: QueuedMessage) -> None:
        self._transition(message, MessageState.SENT)
        message.processed_at = self.clock()

    def apply_failure(self, message: QueuedMessage, decision: RetryDecision) -> None:
        """Apply a :class:`RetryDecision` produced for an in-flight message."""
        self._transition(message, decision.next_state)
        message.attempts = decision.attempts
        message.last_error = decision.error
        if decision.next_state is MessageState.FAILED:
            message.processed_at = self.clock()

    # ------------------------------------------------------------------ operator
    def retry_one(self, message_id: str) -> bool:
        """Return a failed message to ``pending``; no-op for any other state."""
        message = self._messages.get(message_id)
        if message is None or message.state is not MessageState.FAILED:
            return False
        message.state = MessageState.PENDING
        message.attempts = 0
        message.last_error = None
        message.processed_at = None
        return True

    def retry_all_failed(self) -> int:
        failed_ids = [msg.id for msg in self.list_by_state(MessageState.FAILED)]
        count = sum(1 for message_id in failed_ids if self.retry_one(message_id))
        self.logger.info("Retrying %d failed messages", count)
        return count

    def clear_failed(self) -> int:
        """Drop every failed message without retrying it."""
        failed_ids = [msg.id for msg in self.list_by_state(MessageState.FAILED)]
        for message_id in failed_ids:
            del self._messages[message_id]
        return len(failed_ids)

    def evict_old(self, retention_seconds: float, now: Optional[float] = None) -> int:
        """Remove terminal messages processed more than ``retention_seconds`` ago."""
        threshold = (self.clock() if now is None else now) - retention_seconds
        expired = [
            msg.id
            for msg in self._messages.values()
            if msg.state.is_terminal and msg.processed_at is not None and msg.processed_at < threshold
        ]
        for message_id in expired:
            del self._messages[message_id]
        if expired:
            self.logger.debug("Evicted %d processed messages", len(expired))
        return len(expired)
