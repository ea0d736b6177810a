import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("students", "attendance_records", "admin_accounts")

ChangeAction = Literal["insert", "update", "delete"]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    action: ChangeAction
    key: str | None = None
    at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))

    def as_dict(self) -> dict:
        return {"table": self.table, "action": self.action, "key": self.key, "at": self.at}


class Subscription:
    """Async iterator over one table's change events. Close it when done."""

    def __init__(self, notifier: "ChangeNotifier", table: str, max_queue_size: int):
        self.table = table
        self._notifier = notifier
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.closed = False

    def _offer(self, event: ChangeEvent) -> None:
        if self._queue.full():
            # slow consumer; a reload is all it needs, so the oldest event can go
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    def deliver(self, event: ChangeEvent) -> None:
        if self.closed or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._offer, event)

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._notifier._detach(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.close()


class ChangeNotifier:
    """
    Fan-out of table change notifications to async subscribers.

    Events carry no row data; subscribers are expected to re-fetch the table.
    publish() may be called from any thread (sync FastAPI endpoints run in a
    worker pool), so each event is handed to the subscriber's own loop.
    """

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, []))

    def subscribe(self, table: str) -> Subscription:
        """Must be called from inside a running event loop."""
        if table not in WATCHED_TABLES:
            raise ValueError(f"Unknown table: {table}")
        sub = Subscription(self, table, self._max_queue_size)
        with self._lock:
            self._subscribers.setdefault(table, []).append(sub)
        logger.debug("Subscriber attached to %s", table)
        return sub

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.table, [])
            if sub in subs:
                subs.remove(sub)
        logger.debug("Subscriber detached from %s", sub.table)

    def publish(self, table: str, action: ChangeAction, key: str | None = None) -> ChangeEvent:
        event = ChangeEvent(table=table, action=action, key=key)
        with self._lock:
            targets = list(self._subscribers.get(table, []))
        for sub in targets:
            sub.deliver(event)
        return event
