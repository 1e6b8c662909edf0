"""Best-effort delivery history.

A history sink stores one row per queue event (``queued``, ``sent``, ``retry``,
``failed``). Writes are never allowed to fail or slow down the dispatch loop:
:class:`BestEffortHistory` schedules them as background tasks and only logs
what goes wrong.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, runtime_checkable

import aiosqlite

from .logger import get_logger
from .models import QueuedMessage

EVENT_QUEUED = "queued"
EVENT_SENT = "sent"
EVENT_RETRY = "retry"
EVENT_FAILED = "failed"


@dataclass(frozen=True)
class HistoryEvent:
    """A single entry of the delivery log."""

    type: str
    message_id: str
    recipient: str
    subject: str
    status: str
    template: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_message(cls, event_type: str, message: QueuedMessage, **metadata: Any) -> "HistoryEvent":
        """Build an event describing the current state of ``message``."""
        sent_at = message.processed_at if event_type == EVENT_SENT else None
        meta = {"queue_id": message.id, "template": message.template}
        meta.update(metadata)
        return cls(
            type=event_type,
            message_id=message.id,
            recipient=message.recipient_summary,
            subject=message.subject,
            status=message.state.value,
            template=message.template,
            error=message.last_error if event_type != EVENT_QUEUED else None,
            sent_at=sent_at,
            metadata=meta,
        )


@runtime_checkable
class HistorySink(Protocol):
    """Persistence port for delivery events."""

    async def record(self, event: HistoryEvent) -> None:
        ...


class NullHistorySink:
    """Sink used when no backing store is configured."""

    async def record(self, event: HistoryEvent) -> None:
        return None


class SqliteHistorySink:
    """Store delivery events in an SQLite ``notification_log`` table."""

    def __init__(self, db_path: str = ":memory:"):
        """Persist events to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the log table and its indexes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    type TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    status TEXT NOT NULL,
                    template TEXT,
                    error TEXT,
                    sent_at REAL,
                    metadata TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_notification_log_message ON notification_log(message_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_notification_log_created ON notification_log(created_at)"
            )
            await db.commit()

    async def record(self, event: HistoryEvent) -> None:
        """Append ``event`` to the log."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO notification_log
                (type, message_id, recipient, subject, status, template, error, sent_at, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.type,
                    event.message_id,
                    event.recipient,
                    event.subject,
                    event.status,
                    event.template,
                    event.error,
                    event.sent_at,
                    json.dumps(event.metadata) if event.metadata else None,
                    event.created_at,
                ),
            )
            await db.commit()

    async def list_events(self, limit: int = 100, message_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the most recent events, newest first."""
        query = "SELECT type, message_id, recipient, subject, status, template, error, sent_at, metadata, created_at FROM notification_log"
        params: List[Any] = []
        if message_id:
            query += " WHERE message_id = ?"
            params.append(message_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        events: List[Dict[str, Any]] = []
        for row in rows:
            data = dict(row)
            data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
            events.append(data)
        return events

    async def count_by_status(self, since_ts: float = 0) -> Dict[str, int]:
        """Count events per status recorded after ``since_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM notification_log WHERE created_at >= ? GROUP BY status",
                (since_ts,),
            ) as cur:
                rows = await cur.fetchall()
        return {status: int(count) for status, count in rows}


class BestEffortHistory:
    """Fire-and-forget front end for a :class:`HistorySink`.

    :meth:`emit` returns immediately. Each write runs in its own task; a failing
    sink is logged and otherwise ignored.
    """

    def __init__(self, sink: HistorySink | None = None, logger=None):
        self.sink = sink or NullHistorySink()
        self.logger = logger or get_logger()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return not isinstance(self.sink, NullHistorySink)

    def emit(self, event: HistoryEvent) -> None:
        """Schedule ``event`` to be written without waiting for the result."""
        if not self.enabled:
            return
        try:
            task = asyncio.get_running_loop().create_task(self._write(event))
        except RuntimeError:
            self.logger.debug("No running event loop, history event %s for %s dropped", event.type, event.message_id)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, event: HistoryEvent) -> None:
        try:
            await self.sink.record(event)
        except Exception as exc:
            self.logger.warning(
                "Could not record %s event for message %s: %s", event.type, event.message_id, exc
            )

    async def drain(self) -> None:
        """Wait until every scheduled write has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
