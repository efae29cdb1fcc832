"""Task store: the single writer of AgentTask and ActivityLogEntry state.

Status changes are conditional updates guarded by the current status, so a
``cancel`` racing a worker's ``completed`` write always leaves exactly one
terminal state. Cancellation is cooperative: the store flips the status and
signals the task's :class:`CancellationToken`; workers check it at their own
checkpoints.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional
import uuid

from agentdesk.core.activity import LOG_STATUSES, TERMINAL_LOG_STATUSES, ActivityLogEntry
from agentdesk.core.errors import InvalidTransition, TaskCancelled, TaskNotFound
from agentdesk.core.logging_config import log_activity_central
from agentdesk.core.realtime import ACTIVITY_TABLE, TASKS_TABLE, ChangeEvent, StatusChannel

logger = logging.getLogger("agentdesk.tasks")


def _now() -> datetime:
    return datetime.now(timezone.utc)


TASK_STATUSES = ("pending", "queued", "running", "completed", "failed", "cancelled", "awaiting_ci")
ACTIVE_STATUSES = frozenset({"pending", "queued", "running"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

# Allowed forward moves; nothing leaves a terminal state.
_TRANSITIONS: Dict[str, frozenset[str]] = {
    "pending": frozenset({"queued", "running", "failed", "cancelled"}),
    "queued": frozenset({"running", "failed", "cancelled"}),
    "running": frozenset({"awaiting_ci", "completed", "failed", "cancelled"}),
    "awaiting_ci": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in _TRANSITIONS.get(current, frozenset())


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class AgentTask:
    """One unit of dispatched work."""
    id: str
    user_id: str
    agent: str
    status: str = "pending"
    intent: Optional[str] = None
    parent_task_id: Optional[str] = None
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    cost_usd: float = 0.0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "agent": self.agent,
            "status": self.status,
            "intent": self.intent,
            "parent_task_id": self.parent_task_id,
            "input": self.input,
            "output": self.output,
            "cost_usd": self.cost_usd,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AgentTask":
        return cls(
            id=d["id"],
            user_id=d["user_id"],
            agent=d.get("agent", ""),
            status=d.get("status", "pending"),
            intent=d.get("intent"),
            parent_task_id=d.get("parent_task_id"),
            input=d.get("input") or {},
            output=d.get("output"),
            cost_usd=float(d.get("cost_usd") or 0.0),
            error=d.get("error"),
            created_at=datetime.fromisoformat(d["created_at"]),
            updated_at=datetime.fromisoformat(d["updated_at"]),
            cancelled_at=_parse_ts(d.get("cancelled_at")),
            completed_at=_parse_ts(d.get("completed_at")),
        )


class CancellationToken:
    """Per-task cancellation signal handed to workers."""

    def __init__(self, task_id: str, event: threading.Event) -> None:
        self.task_id = task_id
        self._event = event

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled(self.task_id)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns True if cancelled."""
        return self._event.wait(timeout)


class TaskStore:
    """Owns task rows and the append-only activity log, persisted under ``data_dir``."""

    def __init__(self, data_dir: str, channel: Optional[StatusChannel] = None) -> None:
        self.data_dir = data_dir
        self.channel = channel
        self._tasks: Dict[str, AgentTask] = {}
        self._log: List[ActivityLogEntry] = []
        self._cancel_events: Dict[str, threading.Event] = {}
        self._store_path = os.path.join(data_dir, "tasks.json")
        self._log_path = os.path.join(data_dir, "activity.jsonl")
        self._lock = threading.RLock()
        os.makedirs(data_dir, exist_ok=True)
        self._load()

    # ── persistence ──────────────────────────────────────────

    def _load(self) -> None:
        if os.path.exists(self._store_path):
            try:
                with open(self._store_path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                for item in raw.get("tasks", []):
                    task = AgentTask.from_dict(item)
                    self._tasks[task.id] = task
                    if task.status == "cancelled":
                        self._event_for(task.id).set()
            except Exception as exc:
                logger.error("Failed to load tasks: %s", exc)
        if os.path.exists(self._log_path):
            with open(self._log_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        self._log.append(ActivityLogEntry.from_dict(json.loads(line)))
                    except (ValueError, KeyError) as exc:
                        logger.warning("Skipping unreadable activity line: %s", exc)

    def _save(self) -> None:
        payload = {"tasks": [t.to_dict() for t in self._tasks.values()]}
        tmp_path = f"{self._store_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._store_path)

    def _append_log_line(self, entry: ActivityLogEntry) -> None:
        with open(self._log_path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry.to_dict(), default=str) + "\n")
            handle.flush()

    def _publish(self, events: Iterable[ChangeEvent]) -> None:
        if self.channel is None:
            return
        for event in events:
            self.channel.publish(event)

    @staticmethod
    def _task_event(task: AgentTask, event_type: str) -> ChangeEvent:
        return ChangeEvent(
            table=TASKS_TABLE,
            event_type=event_type,
            user_id=task.user_id,
            record_id=task.id,
            task_id=task.id,
            status=task.status,
        )

    def _event_for(self, task_id: str) -> threading.Event:
        event = self._cancel_events.get(task_id)
        if event is None:
            event = threading.Event()
            self._cancel_events[task_id] = event
        return event

    def _require(self, task_id: str) -> AgentTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    # ── task rows ────────────────────────────────────────────

    def create_task(
        self,
        user_id: str,
        agent: str,
        intent: Optional[str] = None,
        status: str = "pending",
        parent_task_id: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
    ) -> AgentTask:
        if status not in ("pending", "queued"):
            raise ValueError(f"Tasks must be created pending or queued, not {status!r}")
        task = AgentTask(
            id=f"task-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            agent=agent,
            status=status,
            intent=intent,
            parent_task_id=parent_task_id,
            input=dict(input or {}),
        )
        with self._lock:
            self._tasks[task.id] = task
            self._event_for(task.id)
            self._save()
        logger.info("Task created: %s (%s, %s)", task.id, agent, status)
        self._publish([self._task_event(task, "INSERT")])
        return task

    def get(self, task_id: str) -> Optional[AgentTask]:
        return self._tasks.get(task_id)

    def list_tasks(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[AgentTask]:
        wanted = set(statuses) if statuses else ({status} if status else None)
        with self._lock:
            tasks = list(self._tasks.values())
        if user_id:
            tasks = [t for t in tasks if t.user_id == user_id]
        if wanted:
            tasks = [t for t in tasks if t.status in wanted]
        return sorted(tasks, key=lambda t: t.created_at)

    def children(self, parent_task_id: str) -> List[AgentTask]:
        return [t for t in self.list_tasks() if t.parent_task_id == parent_task_id]

    def count_active(self, user_id: str, statuses: Iterable[str] = ("running", "queued")) -> int:
        return len(self.list_tasks(user_id=user_id, statuses=statuses))

    def count_created_since(self, user_id: str, since: datetime) -> int:
        return len([t for t in self.list_tasks(user_id=user_id) if t.created_at >= since])

    def update_status(
        self,
        task_id: str,
        status: str,
        *,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        strict: bool = False,
    ) -> bool:
        """Conditionally move a task to ``status``.

        Returns False (or raises :class:`InvalidTransition` when ``strict``)
        if the current status does not allow the move, e.g. a worker trying
        to complete a task that was cancelled meanwhile.
        """
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        with self._lock:
            task = self._require(task_id)
            if not can_transition(task.status, status):
                if strict:
                    raise InvalidTransition(task_id, task.status, status)
                logger.debug("Task %s: ignoring %s -> %s", task_id, task.status, status)
                return False
            now = _now()
            task.status = status
            task.updated_at = now
            if status == "completed":
                task.output = output if output is not None else (task.output or {})
            if error is not None:
                task.error = error
            if status in TERMINAL_STATUSES:
                task.completed_at = now
            if status == "cancelled":
                task.cancelled_at = now
                self._event_for(task_id).set()
            self._save()
            event = self._task_event(task, "UPDATE")
        self._publish([event])
        return True

    def start(self, task_id: str) -> bool:
        return self.update_status(task_id, "running")

    def complete(self, task_id: str, output: Optional[Dict[str, Any]] = None) -> bool:
        return self.update_status(task_id, "completed", output=output or {})

    def fail(self, task_id: str, error: str) -> bool:
        return self.update_status(task_id, "failed", error=error)

    def add_cost(self, task_id: str, amount_usd: float) -> float:
        """Accumulate cost on a non-terminal task. Returns the new total."""
        if amount_usd < 0:
            raise ValueError("cost increments must be non-negative")
        with self._lock:
            task = self._require(task_id)
            if task.is_terminal:
                return task.cost_usd
            task.cost_usd = round(task.cost_usd + amount_usd, 6)
            task.updated_at = _now()
            self._save()
            total = task.cost_usd
            event = self._task_event(task, "UPDATE")
        self._publish([event])
        return total

    # ── cancellation ─────────────────────────────────────────

    def cancel(self, task_id: str, reason: str = "Cancelled by user") -> AgentTask:
        """Cancel one task if it is pending/queued/running; otherwise a no-op."""
        with self._lock:
            task = self._require(task_id)
            applied = self._cancel_locked(task, reason, _now())
            if applied:
                self._save()
            event = self._task_event(task, "UPDATE") if applied else None
        if event:
            logger.info("Task cancelled: %s (%s)", task_id, reason)
            self._publish([event])
        return task

    def cancel_many(
        self,
        user_id: str,
        statuses: Iterable[str] = ACTIVE_STATUSES,
        reason: str = "Cancelled by user",
        task_ids: Optional[Iterable[str]] = None,
    ) -> List[str]:
        """Cancel every matching task in one critical section; returns the ids transitioned."""
        wanted = set(statuses) & ACTIVE_STATUSES
        only = set(task_ids) if task_ids is not None else None
        now = _now()
        cancelled: List[AgentTask] = []
        with self._lock:
            for task in self._tasks.values():
                if task.user_id != user_id or task.status not in wanted:
                    continue
                if only is not None and task.id not in only:
                    continue
                if self._cancel_locked(task, reason, now):
                    cancelled.append(task)
            if cancelled:
                self._save()
            events = [self._task_event(t, "UPDATE") for t in cancelled]
        if cancelled:
            logger.info("Cancelled %d task(s) for %s (%s)", len(cancelled), user_id, reason)
        self._publish(events)
        return [t.id for t in cancelled]

    def cancel_all(
        self,
        user_id: str,
        statuses: Iterable[str] = ACTIVE_STATUSES,
        reason: str = "Cancelled by user",
    ) -> int:
        return len(self.cancel_many(user_id, statuses, reason=reason))

    def _cancel_locked(self, task: AgentTask, reason: str, now: datetime) -> bool:
        if task.status not in ACTIVE_STATUSES:
            return False
        task.status = "cancelled"
        task.cancelled_at = now
        task.completed_at = now
        task.updated_at = now
        task.error = reason
        self._event_for(task.id).set()
        return True

    def is_cancelled(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and task.status == "cancelled"

    def cancellation_token(self, task_id: str) -> CancellationToken:
        with self._lock:
            self._require(task_id)
            return CancellationToken(task_id, self._event_for(task_id))

    def fail_stale(self, user_id: str, older_than_seconds: int) -> List[str]:
        """Fail running/queued tasks created more than ``older_than_seconds`` ago."""
        cutoff = _now() - timedelta(seconds=older_than_seconds)
        minutes = max(1, older_than_seconds // 60)
        failed: List[AgentTask] = []
        with self._lock:
            for task in self._tasks.values():
                if task.user_id != user_id or task.status not in ("running", "queued"):
                    continue
                if task.created_at >= cutoff:
                    continue
                now = _now()
                task.status = "failed"
                task.error = f"Timed out (stale >{minutes}min)"
                task.completed_at = now
                task.updated_at = now
                failed.append(task)
            if failed:
                self._save()
            events = [self._task_event(t, "UPDATE") for t in failed]
        for task in failed:
            logger.warning("Task %s marked failed: %s", task.id, task.error)
        self._publish(events)
        return [t.id for t in failed]

    # ── activity log ─────────────────────────────────────────

    def record_log(
        self,
        task_id: str,
        step: str,
        status: str,
        detail: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
        agent: Optional[str] = None,
    ) -> ActivityLogEntry:
        """Append one entry. Prior entries are never touched."""
        if status not in LOG_STATUSES:
            raise ValueError(f"Invalid log status: {status}")
        if not step:
            raise ValueError("step is required")
        if duration_ms is not None and status not in TERMINAL_LOG_STATUSES:
            raise ValueError(f"duration_ms is only recorded on terminal entries, not {status!r}")
        with self._lock:
            task = self._require(task_id)
            entry = ActivityLogEntry(
                id=f"log-{uuid.uuid4().hex[:12]}",
                task_id=task_id,
                step=step,
                status=status,
                detail=dict(detail or {}),
                duration_ms=duration_ms,
                user_id=task.user_id,
                agent=agent or task.agent,
            )
            self._log.append(entry)
            self._append_log_line(entry)
        log_activity_central(entry.to_dict())
        self._publish([
            ChangeEvent(
                table=ACTIVITY_TABLE,
                event_type="INSERT",
                user_id=entry.user_id,
                record_id=entry.id,
                task_id=task_id,
                status=status,
            )
        ])
        return entry

    def activity(
        self,
        user_id: Optional[str] = None,
        task_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ActivityLogEntry]:
        """Entries in arrival order; ``limit`` keeps the most recent ones."""
        with self._lock:
            entries = list(self._log)
        if user_id:
            entries = [e for e in entries if e.user_id == user_id]
        if task_id:
            entries = [e for e in entries if e.task_id == task_id]
        if limit is not None and limit >= 0:
            entries = entries[-limit:] if limit else []
        return entries
