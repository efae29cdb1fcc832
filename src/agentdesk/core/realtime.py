"""Realtime status channel: push task-store mutations to live observers.

Observers subscribe per user and receive a :class:`ChangeEvent` for every
insert/update on that user's tasks and activity-log rows. Push delivery is
best effort, so the payload only identifies *what* changed. Observers are
expected to re-fetch from the task store (see :class:`LiveFeed`) rather
than trust the event contents.
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger("agentdesk.realtime")

TASKS_TABLE = "agent_tasks"
ACTIVITY_TABLE = "activity_log"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChangeEvent:
    table: str              # agent_tasks | activity_log
    event_type: str         # INSERT | UPDATE | DELETE
    user_id: str
    record_id: str
    task_id: str = ""
    status: str = ""
    ts: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type,
            "user_id": self.user_id,
            "record_id": self.record_id,
            "task_id": self.task_id,
            "status": self.status,
            "ts": self.ts.isoformat(),
        }


Callback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by :meth:`StatusChannel.subscribe`."""

    def __init__(
        self,
        channel: "StatusChannel",
        sub_id: int,
        user_id: str,
        callback: Callback,
        tables: Optional[frozenset[str]] = None,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> None:
        self._channel = channel
        self.sub_id = sub_id
        self.user_id = user_id
        self.callback = callback
        self.tables = tables
        self.on_lost = on_lost
        self.active = True

    def wants(self, event: ChangeEvent) -> bool:
        if event.user_id != self.user_id:
            return False
        return self.tables is None or event.table in self.tables

    def close(self) -> None:
        self._channel.unsubscribe(self)


class StatusChannel:
    """In-process pub/sub hub. Thread-safe; callbacks run on the publisher's thread."""

    def __init__(self) -> None:
        self._subs: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        user_id: str,
        callback: Callback,
        tables: Optional[List[str]] = None,
        on_lost: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        with self._lock:
            sub = Subscription(
                self,
                next(self._ids),
                user_id,
                callback,
                tables=frozenset(tables) if tables else None,
                on_lost=on_lost,
            )
            self._subs[sub.sub_id] = sub
        logger.debug("Subscribed #%d for user %s", sub.sub_id, user_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.pop(sub.sub_id, None)
            sub.active = False

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return len(self._subs)
            return len([s for s in self._subs.values() if s.user_id == user_id])

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to matching subscribers. Returns the delivery count."""
        with self._lock:
            targets = [s for s in self._subs.values() if s.wants(event)]
        delivered = 0
        for sub in targets:
            try:
                sub.callback(event)
                delivered += 1
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber #%d failed handling %s", sub.sub_id, event.event_type)
        return delivered

    def drop(self, user_id: Optional[str] = None) -> int:
        """Terminate subscriptions (all, or one user's) and fire their ``on_lost`` hooks."""
        with self._lock:
            lost = [s for s in self._subs.values() if user_id is None or s.user_id == user_id]
            for sub in lost:
                self._subs.pop(sub.sub_id, None)
                sub.active = False
        for sub in lost:
            if sub.on_lost:
                try:
                    sub.on_lost()
                except Exception:  # noqa: BLE001
                    logger.exception("on_lost hook failed for subscription #%d", sub.sub_id)
        return len(lost)


T = TypeVar("T")


class LiveFeed(Generic[T]):
    """Observer that keeps an authoritative snapshot in sync with the channel.

    Every notification triggers ``refetch()``; the push payload is only a
    wake-up signal. When the subscription is lost the feed re-subscribes and
    performs one catch-up re-fetch so nothing published in between is missed.
    """

    def __init__(
        self,
        channel: StatusChannel,
        user_id: str,
        refetch: Callable[[], T],
        on_change: Optional[Callable[[T], None]] = None,
        tables: Optional[List[str]] = None,
        auto_reconnect: bool = True,
    ) -> None:
        self.channel = channel
        self.user_id = user_id
        self.refetch = refetch
        self.on_change = on_change
        self.tables = tables
        self.auto_reconnect = auto_reconnect
        self.snapshot: Optional[T] = None
        self.refetch_count = 0
        self.reconnect_count = 0
        self._sub: Optional[Subscription] = None
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._sub is not None and self._sub.active

    def start(self) -> "LiveFeed[T]":
        self._stopped = False
        self._subscribe()
        self.sync()
        return self

    def stop(self) -> None:
        self._stopped = True
        if self._sub is not None:
            self._sub.close()
            self._sub = None

    def sync(self) -> T:
        """Authoritative re-fetch; notifies ``on_change`` with the fresh snapshot."""
        with self._lock:
            snapshot = self.refetch()
            self.snapshot = snapshot
            self.refetch_count += 1
        if self.on_change:
            self.on_change(snapshot)
        return snapshot

    def reconnect(self) -> None:
        if self._stopped:
            return
        if self._sub is not None:
            self._sub.close()
        self.reconnect_count += 1
        logger.info("Live feed for %s reconnecting (attempt %d)", self.user_id, self.reconnect_count)
        self._subscribe()
        self.sync()

    def ensure_connected(self) -> None:
        if not self.connected:
            self.reconnect()

    def _subscribe(self) -> None:
        self._sub = self.channel.subscribe(
            self.user_id,
            self._on_event,
            tables=self.tables,
            on_lost=self._on_lost,
        )

    def _on_event(self, event: ChangeEvent) -> None:
        if self._stopped:
            return
        self.sync()

    def _on_lost(self) -> None:
        self._sub = None
        if self.auto_reconnect and not self._stopped:
            self.reconnect()
