import asyncio
import types
from typing import List

import pytest

from async_mail_queue.core import AsyncMailQueue
from async_mail_queue.models import DeliveryResult, MessageState


class DummyTransport:
    """Transport whose outcome is scripted per recipient."""

    def __init__(self, outcomes=None, default=True):
        self.outcomes = outcomes or {}
        self.default = default
        self.calls: List[str] = []

    async def deliver(self, message):
        self.calls.append(message.id)
        recipient = message.recipients[0]
        outcome = self.outcomes.get(recipient, self.default)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else self.default
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, DeliveryResult):
            return outcome
        return DeliveryResult.success() if outcome else DeliveryResult.failure("smtp down")


class SlowTransport:
    def __init__(self, delay):
        self.delay = delay
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def deliver(self, message):
        self.calls += 1
        self.started.set()
        await asyncio.wait_for(self.release.wait(), timeout=self.delay)
        return DeliveryResult.success()


class DummyMetrics:
    def __init__(self):
        self.counts = {"enqueued": 0, "sent": 0, "retried": 0, "failed": 0, "rate_limited": 0}
        self.last_stats = None

    def inc_enqueued(self):
        self.counts["enqueued"] += 1

    def inc_sent(self):
        self.counts["sent"] += 1

    def inc_retried(self):
        self.counts["retried"] += 1

    def inc_failed(self):
        self.counts["failed"] += 1

    def inc_rate_limited(self):
        self.counts["rate_limited"] += 1

    def set_queue_stats(self, stats):
        self.last_stats = stats


class ListSink:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    async def record(self, event):
        if self.fail:
            raise RuntimeError("database unavailable")
        self.events.append(event)


def silent_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


def make_core(clock, transport=None, **kwargs) -> AsyncMailQueue:
    kwargs.setdefault("metrics", DummyMetrics())
    kwargs.setdefault("logger", silent_logger())
    return AsyncMailQueue(transport or DummyTransport(), clock=clock, **kwargs)


async def tick(core, clock, seconds=60.0):
    """Advance past the rate limiter window and run one scheduler tick."""
    clock.advance(seconds)
    return await core.run_once()


@pytest.mark.asyncio
async def test_single_tick_delivers_all_messages(clock):
    core = make_core(clock)
    ids = [core.enqueue(f"user{i}@example.com", "Hello") for i in range(3)]

    assert await core.run_once() == 3

    assert core.stats().sent == 3
    assert core.stats().to_dict()["sent"] == 3
    for message_id in ids:
        message = core.get(message_id)
        assert message.state is MessageState.SENT
        assert message.processed_at == clock.now
    assert core.metrics.counts["sent"] == 3
    assert core.metrics.counts["enqueued"] == 3


@pytest.mark.asyncio
async def test_always_failing_message_fails_after_max_retries(clock):
    core = make_core(clock, DummyTransport(default=False), max_retries=2)
    message_id = core.enqueue("user@example.com", "Hello")

    await tick(core, clock)
    message = core.get(message_id)
    assert message.state is MessageState.PENDING
    assert message.attempts == 1
    assert message.last_error == "smtp down"

    await tick(core, clock)
    assert message.state is MessageState.FAILED
    assert message.attempts == 2
    assert message.processed_at == clock.now

    # No further attempts for a failed message
    await tick(core, clock)
    assert message.attempts == 2
    assert core.transport.calls == [message_id, message_id]
    assert core.metrics.counts["retried"] == 1
    assert core.metrics.counts["failed"] == 1


@pytest.mark.asyncio
async def test_message_failing_once_then_succeeding_is_sent(clock):
    transport = DummyTransport(outcomes={"user@example.com": [False, True]})
    core = make_core(clock, transport, max_retries=2)
    message_id = core.enqueue("user@example.com", "Hello")

    await tick(core, clock)
    await tick(core, clock)

    message = core.get(message_id)
    assert message.state is MessageState.SENT
    assert message.attempts == 1


@pytest.mark.asyncio
async def test_retry_all_failed_requeues_and_delivers(clock):
    transport = DummyTransport(outcomes={"ok@example.com": True}, default=False)
    core = make_core(clock, transport, max_retries=1)
    failed_a = core.enqueue("bad1@example.com", "A")
    failed_b = core.enqueue("bad2@example.com", "B")
    sent = core.enqueue("ok@example.com", "C")
    await tick(core, clock)
    assert core.stats().failed == 2
    sent_snapshot = core.get(sent).to_dict()

    assert core.retry_all_failed() == 2

    for message_id in (failed_a, failed_b):
        message = core.get(message_id)
        assert message.state is MessageState.PENDING
        assert message.attempts == 0
        assert message.last_error is None
    assert core.get(sent).to_dict() == sent_snapshot


@pytest.mark.asyncio
async def test_failure_does_not_affect_other_messages_in_batch(clock):
    transport = DummyTransport(
        outcomes={
            "bad@example.com": False,
            "boom@example.com": RuntimeError("template exploded"),
        }
    )
    core = make_core(clock, transport)
    bad = core.enqueue("bad@example.com", "A")
    boom = core.enqueue("boom@example.com", "B")
    good = core.enqueue("good@example.com", "C")

    await core.run_once()

    assert core.get(good).state is MessageState.SENT
    assert core.get(bad).state is MessageState.PENDING
    assert core.get(boom).state is MessageState.PENDING
    assert core.get(boom).last_error == "template exploded"


class NoneResultTransport(DummyTransport):
    """Returns ``None`` instead of a result for the listed recipients."""

    def __init__(self, broken):
        super().__init__()
        self.broken = set(broken)

    async def deliver(self, message):
        if message.recipients[0] in self.broken:
            self.calls.append(message.id)
            return None
        return await super().deliver(message)


class ExplodingSentMetrics(DummyMetrics):
    def inc_sent(self):
        raise RuntimeError("metrics backend down")


@pytest.mark.asyncio
async def test_malformed_transport_result_goes_through_retry_policy(clock):
    core = make_core(clock, NoneResultTransport({"bad@example.com"}), max_retries=3)
    bad = core.enqueue("bad@example.com", "A")
    good = core.enqueue("good@example.com", "B")

    assert await core.run_once() == 2

    assert core.get(good).state is MessageState.SENT
    assert core.get(bad).state is MessageState.PENDING
    assert core.get(bad).attempts == 1
    assert core.get(bad).last_error == "Invalid transport result: NoneType"
    assert core._dispatching is False

    for _ in range(3):
        await tick(core, clock)

    assert core.get(bad).state is MessageState.FAILED
    assert core.get(bad).attempts == 3
    assert core.stats().in_flight == 0


@pytest.mark.asyncio
async def test_errors_after_delivery_never_escape_the_tick(clock):
    core = make_core(clock, metrics=ExplodingSentMetrics())
    first = core.enqueue("a@example.com", "A")
    second = core.enqueue("b@example.com", "B")

    assert await core.run_once() == 2

    assert core.get(first).state is MessageState.SENT
    assert core.get(second).state is MessageState.SENT
    assert core.stats().in_flight == 0


@pytest.mark.asyncio
async def test_timeout_error_raised_by_transport_keeps_its_reason(clock):
    transport = DummyTransport(outcomes={"a@example.com": TimeoutError("smtp read timeout")})
    core = make_core(clock, transport, send_timeout=30)
    message_id = core.enqueue("a@example.com", "A")

    await core.run_once()

    message = core.get(message_id)
    assert message.state is MessageState.PENDING
    assert message.last_error == "smtp read timeout"


@pytest.mark.asyncio
async def test_failed_messages_always_have_max_attempts(clock):
    core = make_core(clock, DummyTransport(default=False), max_retries=3, batch_size=5)
    for i in range(7):
        core.enqueue(f"user{i}@example.com", "Hello")

    for _ in range(12):
        await tick(core, clock)

    failed = core.list_by_state("failed")
    assert len(failed) == 7
    assert all(message.attempts == 3 for message in failed)


@pytest.mark.asyncio
async def test_batch_size_limits_selection_in_enqueue_order(clock):
    core = make_core(clock, batch_size=2)
    ids = [core.enqueue(f"user{i}@example.com", "Hello") for i in range(5)]

    assert await core.run_once() == 2
    assert core.transport.calls == ids[:2]
    assert core.stats().pending == 3


@pytest.mark.asyncio
async def test_rate_limiter_skips_ticks_inside_window(clock):
    core = make_core(clock, rate_per_minute=60, batch_size=1)
    for i in range(3):
        core.enqueue(f"user{i}@example.com", "Hello")

    assert await core.run_once() == 1
    clock.advance(0.5)
    assert await core.run_once() == 0
    assert core.metrics.counts["rate_limited"] == 1
    clock.advance(0.5)
    assert await core.run_once() == 1


@pytest.mark.asyncio
async def test_empty_tick_does_not_consume_rate_window(clock):
    core = make_core(clock, rate_per_minute=60, batch_size=10)
    assert await core.run_once() == 0
    core.enqueue("user@example.com", "Hello")
    assert await core.run_once() == 1


@pytest.mark.asyncio
async def test_eviction_runs_after_batch(clock):
    core = make_core(clock, retention_seconds=3600)
    old = core.enqueue("old@example.com", "Old")
    await core.run_once()
    clock.advance(4000)
    fresh = core.enqueue("new@example.com", "New")
    await core.run_once()

    assert core.get(old) is None
    assert core.get(fresh).state is MessageState.SENT
    assert [msg.id for msg in core.list_by_state("sent")] == [fresh]


@pytest.mark.asyncio
async def test_evict_old_uses_configured_window(clock):
    core = make_core(clock, retention_seconds=100)
    message_id = core.enqueue("user@example.com", "Hello")
    await core.run_once()
    clock.advance(50)
    assert core.evict_old() == 0
    clock.advance(51)
    assert core.evict_old() == 1
    assert core.get(message_id) is None


@pytest.mark.asyncio
async def test_transport_timeout_counts_as_failure(clock):
    core = make_core(clock, SlowTransport(delay=5), send_timeout=0.01)
    message_id = core.enqueue("user@example.com", "Hello")

    await core.run_once()

    message = core.get(message_id)
    assert message.state is MessageState.PENDING
    assert message.attempts == 1
    assert "timed out" in message.last_error


@pytest.mark.asyncio
async def test_ticks_never_overlap(clock):
    transport = SlowTransport(delay=5)
    core = make_core(clock, transport, batch_size=1, rate_per_minute=10_000)
    core.enqueue("a@example.com", "A")
    core.enqueue("b@example.com", "B")

    first = asyncio.create_task(core.run_once())
    await transport.started.wait()
    clock.advance(60)
    # A second tick while the first batch is in flight is skipped
    assert await core.run_once() == 0
    assert transport.calls == 1

    transport.release.set()
    assert await first == 1
    assert await tick(core, clock) == 1


@pytest.mark.asyncio
async def test_permanent_failures_short_circuit_when_enabled(clock):
    transport = DummyTransport(default=DeliveryResult.failure("550 unknown user", permanent=True))
    core = make_core(clock, transport, max_retries=3, short_circuit_permanent=True)
    message_id = core.enqueue("user@example.com", "Hello")

    await core.run_once()

    message = core.get(message_id)
    assert message.state is MessageState.FAILED
    assert message.attempts == 1


@pytest.mark.asyncio
async def test_history_receives_lifecycle_events(clock):
    sink = ListSink()
    transport = DummyTransport(outcomes={"user@example.com": [False, True]})
    core = make_core(clock, transport, history_sink=sink)
    message_id = core.enqueue("user@example.com", "Hello", template="welcome")

    await tick(core, clock)
    await tick(core, clock)
    await core.history.drain()

    assert [event.type for event in sink.events] == ["queued", "retry", "sent"]
    assert all(event.message_id == message_id for event in sink.events)
    assert sink.events[1].error == "smtp down"
    assert sink.events[2].sent_at == core.get(message_id).processed_at
    assert "process_time" in sink.events[2].metadata


@pytest.mark.asyncio
async def test_history_failures_never_affect_delivery(clock):
    core = make_core(clock, history_sink=ListSink(fail=True))
    message_id = core.enqueue("user@example.com", "Hello")

    await core.run_once()
    await core.history.drain()

    assert core.get(message_id).state is MessageState.SENT


@pytest.mark.asyncio
async def test_operator_actions_refresh_gauge(clock):
    core = make_core(clock, DummyTransport(default=False), max_retries=1)
    message_id = core.enqueue("user@example.com", "Hello")
    await core.run_once()
    assert core.metrics.last_stats.failed == 1

    assert core.retry_one(message_id) is True
    assert core.metrics.last_stats.pending == 1
    await tick(core, clock)
    assert core.clear_failed() == 1
    assert core.metrics.last_stats.total == 0


@pytest.mark.asyncio
async def test_start_and_stop_background_loop(clock):
    core = make_core(clock, tick_interval=0.05)
    message_id = core.enqueue("user@example.com", "Hello")

    await core.start()
    await core.start()  # idempotent
    assert core.running
    for _ in range(100):
        if core.get(message_id).state is MessageState.SENT:
            break
        await asyncio.sleep(0.01)
    await core.stop()
    await core.stop()

    assert not core.running
    assert core.get(message_id).state is MessageState.SENT


@pytest.mark.asyncio
async def test_stop_lets_in_flight_batch_finish(clock):
    transport = SlowTransport(delay=5)
    core = make_core(clock, transport, tick_interval=0.05)
    message_id = core.enqueue("user@example.com", "Hello")
    await core.start()
    await transport.started.wait()

    stopping = asyncio.create_task(core.stop())
    await asyncio.sleep(0.01)
    assert not stopping.done()
    transport.release.set()
    await stopping

    assert core.get(message_id).state is MessageState.SENT
    core.enqueue("later@example.com", "Later")
    await asyncio.sleep(0.1)
    assert transport.calls == 1


@pytest.mark.asyncio
async def test_wake_triggers_immediate_tick(clock):
    core = make_core(clock, tick_interval=3600)
    await core.start()
    try:
        await asyncio.sleep(0.01)
        message_id = core.enqueue("user@example.com", "Hello")
        core.wake()
        for _ in range(100):
            if core.get(message_id).state is MessageState.SENT:
                break
            await asyncio.sleep(0.01)
        assert core.get(message_id).state is MessageState.SENT
    finally:
        await core.stop()
