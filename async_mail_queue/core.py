"""Batch scheduler driving the in-memory delivery queue."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Iterable, List, Optional, Union

from .config_loader import QueueSettings
from .history import EVENT_FAILED, EVENT_RETRY, EVENT_SENT, BestEffortHistory, HistoryEvent, HistorySink
from .logger import get_logger
from .models import DeliveryResult, MessageState, QueuedMessage, QueueStats
from .prometheus import QueueMetrics
from .queue import DeliveryQueue
from .rate_limit import RateLimiter
from .retry import DEFAULT_MAX_RETRIES, RetryPolicy
from .transport import Transport

DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_RATE_PER_MINUTE = 100
DEFAULT_RETENTION_SECONDS = 3600
DEFAULT_SEND_TIMEOUT = 30.0


class AsyncMailQueue:
    """Coordinate the queue, rate limiting, retries and delivery.

    A background task ticks every ``tick_interval`` seconds. Each tick that is
    allowed by the :class:`RateLimiter` takes up to ``batch_size`` pending
    messages, delivers them concurrently through the transport and feeds
    failures to the :class:`RetryPolicy`. A tick never overlaps a running one.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        history_sink: HistorySink | None = None,
        metrics: QueueMetrics | None = None,
        logger=None,
        clock: Callable[[], float] = time.time,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        rate_per_minute: int = DEFAULT_RATE_PER_MINUTE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        short_circuit_permanent: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators and scheduler state."""
        self.logger = logger or get_logger()
        self.transport = transport
        self.clock = clock
        self.metrics = metrics or QueueMetrics()
        self.history = BestEffortHistory(history_sink, logger=self.logger)
        self.queue = DeliveryQueue(history=self.history, clock=clock, logger=self.logger)
        self.rate_limiter = RateLimiter(rate_per_minute=rate_per_minute, batch_size=batch_size)
        self.retry_policy = RetryPolicy(max_retries, short_circuit_permanent=short_circuit_permanent)

        self._tick_interval = max(0.05, float(tick_interval))
        self._batch_size = max(1, int(batch_size))
        self._retention_seconds = float(retention_seconds)
        self._send_timeout: Optional[float] = float(send_timeout) if send_timeout else None
        self._log_delivery_activity = bool(log_delivery_activity)

        self._dispatching = False
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: QueueSettings,
        transport: Transport,
        *,
        history_sink: HistorySink | None = None,
        **kwargs: Any,
    ) -> "AsyncMailQueue":
        """Build a queue from loaded :class:`QueueSettings`."""
        return cls(
            transport,
            history_sink=history_sink,
            tick_interval=settings.tick_interval,
            batch_size=settings.batch_size,
            rate_per_minute=settings.rate_per_minute,
            max_retries=settings.max_retries,
            retention_seconds=settings.retention_seconds,
            send_timeout=settings.send_timeout,
            short_circuit_permanent=settings.short_circuit_permanent,
            log_delivery_activity=settings.log_delivery_activity,
            **kwargs,
        )

    # ------------------------------------------------------------------ operator
    def enqueue(
        self,
        recipients: Union[str, Iterable[str]],
        subject: str,
        payload: Any = None,
        template: Optional[str] = None,
    ) -> str:
        """Queue a notification; see :meth:`DeliveryQueue.enqueue`."""
        message_id = self.queue.enqueue(recipients, subject, payload, template)
        self.metrics.inc_enqueued()
        self._refresh_gauge()
        return message_id

    def get(self, message_id: str) -> Optional[QueuedMessage]:
        return self.queue.get(message_id)

    def list_by_state(self, state: Union[MessageState, str]) -> List[QueuedMessage]:
        return self.queue.list_by_state(state)

    def stats(self) -> QueueStats:
        return self.queue.stats()

    def retry_one(self, message_id: str) -> bool:
        reset = self.queue.retry_one(message_id)
        if reset:
            self._refresh_gauge()
        return reset

    def retry_all_failed(self) -> int:
        count = self.queue.retry_all_failed()
        self._refresh_gauge()
        return count

    def clear_failed(self) -> int:
        count = self.queue.clear_failed()
        self._refresh_gauge()
        return count

    def evict_old(self, retention_seconds: float | None = None) -> int:
        window = self._retention_seconds if retention_seconds is None else retention_seconds
        removed = self.queue.evict_old(window)
        if removed:
            self._refresh_gauge()
        return removed

    def wake(self) -> None:
        """Ask the dispatch loop to tick now instead of waiting for the interval."""
        self._wake_event.set()

    # ----------------------------------------------------------------- lifecycle
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background dispatch loop (no-op if already running)."""
        if self.running:
            return
        self._stop.clear()
        self.logger.debug("Creating mail queue dispatch task...")
        self._task = asyncio.create_task(self._dispatch_loop(), name="mail-queue-dispatch-loop")

    async def stop(self) -> None:
        """Stop ticking; a batch already in progress is allowed to finish.

        Safe to call several times.
        """
        self._stop.set()
        self._wake_event.set()
        task, self._task = self._task, None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        await self.history.drain()

    # ---------------------------------------------------------------- dispatching
    async def _dispatch_loop(self) -> None:
        """Tick until :meth:`stop` is called."""
        self.logger.debug("Mail queue dispatch loop started")
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in mail queue dispatch loop: %s", exc)
            await self._wait_for_wakeup(self._tick_interval)
        self.logger.debug("Mail queue dispatch loop stopped")

    async def run_once(self) -> int:
        """Run one scheduler tick and return how many messages were dispatched."""
        if self._dispatching:
            self.logger.debug("Dispatch pass already running, skipping tick")
            return 0
        now = self.clock()
        if not self.rate_limiter.allow_batch(now):
            if self.queue.stats().pending:
                self.metrics.inc_rate_limited()
            return 0

        self._dispatching = True
        try:
            batch = self.queue.take_batch(self._batch_size)
            if not batch:
                return 0
            self.rate_limiter.record_batch(now)
            self._refresh_gauge()
            self.logger.debug("Dispatching batch of %d messages", len(batch))
            results = await asyncio.gather(
                *(self._dispatch_message(msg) for msg in batch), return_exceptions=True
            )
            for msg, outcome in zip(batch, results):
                if isinstance(outcome, BaseException):
                    self.logger.error("Dispatch of message %s ended with %r", msg.id, outcome)
            self.queue.evict_old(self._retention_seconds)
            return len(batch)
        finally:
            self._dispatching = False
            self._refresh_gauge()

    async def _dispatch_message(self, message: QueuedMessage) -> None:
        """Deliver one message and apply the outcome; never raises."""
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for message %s to %s (attempt %d)",
                message.id,
                message.recipient_summary,
                message.attempts + 1,
            )
        deadline = asyncio.timeout(self._send_timeout)
        try:
            async with deadline:
                result = await self.transport.deliver(message)
        except TimeoutError as exc:
            if deadline.expired():
                result = DeliveryResult.failure(f"Delivery timed out after {self._send_timeout}s")
            else:
                result = DeliveryResult.failure(str(exc) or exc.__class__.__name__)
        except Exception as exc:
            self.logger.exception("Transport raised while delivering message %s", message.id)
            result = DeliveryResult.failure(str(exc) or exc.__class__.__name__)

        if not isinstance(result, DeliveryResult):
            self.logger.error("Transport returned %r for message %s instead of a DeliveryResult", result, message.id)
            result = DeliveryResult.failure(f"Invalid transport result: {type(result).__name__}")

        try:
            if result.ok:
                self._on_success(message)
            else:
                self._on_failure(message, result)
        except Exception as exc:
            self.logger.exception("Could not apply delivery outcome for message %s", message.id)
            if message.state is MessageState.IN_FLIGHT:
                self.queue.apply_failure(message, self.retry_policy.on_failure(message, str(exc)))

    def _on_success(self, message: QueuedMessage) -> None:
        self.queue.mark_sent(message)
        self.metrics.inc_sent()
        self.history.emit(
            HistoryEvent.from_message(
                EVENT_SENT,
                message,
                process_time=round(message.processed_at - message.created_at, 3),
            )
        )
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for message %s", message.id)

    def _on_failure(self, message: QueuedMessage, result: DeliveryResult) -> None:
        decision = self.retry_policy.on_failure(message, result.reason, permanent=result.permanent)
        self.queue.apply_failure(message, decision)
        if decision.exhausted:
            self.metrics.inc_failed()
            self.logger.error(
                "Message %s failed after %d attempts: %s", message.id, decision.attempts, decision.error
            )
            self.history.emit(HistoryEvent.from_message(EVENT_FAILED, message, retries=decision.attempts))
            return
        self.metrics.inc_retried()
        self.logger.warning(
            "Message %s failed, will retry (%d/%d): %s",
            message.id,
            decision.attempts,
            self.retry_policy.max_retries,
            decision.error,
        )
        self.history.emit(HistoryEvent.from_message(EVENT_RETRY, message, retries=decision.attempts))

    # ----------------------------------------------------------------- helpers
    def _refresh_gauge(self) -> None:
        self.metrics.set_queue_stats(self.queue.stats())

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing external wake-ups via 'run now'."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
