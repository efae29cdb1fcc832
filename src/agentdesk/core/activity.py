"""Activity-log entries and the step logger workers use to write them.

Every agent step is recorded as an append-only :class:`ActivityLogEntry`.
A timed step writes ``started`` and later one terminal entry carrying the
measured duration::

    log = StepLogger(store, task_id, agent="research")
    step = log.step("web_search", {"query": q})
    ...
    step.done({"result_count": 5})      # or step.fail("upstream returned 500")

    with log.step("write-file", {"path": p}):
        ...                              # failed / skipped recorded on exit

Failures to write a log entry are logged and swallowed so logging can never
break the worker.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from agentdesk.core.errors import TaskCancelled

if TYPE_CHECKING:
    from agentdesk.core.tasks import TaskStore

logger = logging.getLogger("agentdesk.activity")

LOG_STATUSES = ("started", "completed", "failed", "skipped", "info")
TERMINAL_LOG_STATUSES = frozenset({"completed", "failed", "skipped"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActivityLogEntry:
    """One observation about one step of one task. Immutable once written."""
    id: str
    task_id: str
    step: str
    status: str             # started | completed | failed | skipped | info
    detail: Dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[int] = None
    user_id: str = ""
    agent: str = ""
    created_at: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LOG_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "agent": self.agent,
            "step": self.step,
            "status": self.status,
            "detail": dict(self.detail),
            "duration_ms": self.duration_ms,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ActivityLogEntry":
        return cls(
            id=d["id"],
            task_id=d["task_id"],
            step=d["step"],
            status=d["status"],
            detail=d.get("detail") or {},
            duration_ms=d.get("duration_ms"),
            user_id=d.get("user_id", ""),
            agent=d.get("agent", ""),
            created_at=datetime.fromisoformat(d["created_at"]),
        )


class StepHandle:
    """Returned by :meth:`StepLogger.step`; records the step's terminal entry once."""

    def __init__(self, owner: "StepLogger", step: str, detail: Dict[str, Any]) -> None:
        self._owner = owner
        self.step = step
        self.detail = dict(detail)
        self._started = time.monotonic()
        self.finished = False

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _finish(self, status: str, extra: Optional[Dict[str, Any]]) -> None:
        if self.finished:
            return
        self.finished = True
        merged = {**self.detail, **(extra or {})}
        self._owner._write(self.step, status, merged, self._elapsed_ms())

    def done(self, detail: Optional[Dict[str, Any]] = None) -> None:
        self._finish("completed", detail)

    def fail(self, error: str, detail: Optional[Dict[str, Any]] = None) -> None:
        self._finish("failed", {**(detail or {}), "error": error})

    def skip(self, reason: str = "") -> None:
        self._finish("skipped", {"message": reason} if reason else None)

    def __enter__(self) -> "StepHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        if exc is None:
            self.done()
        elif isinstance(exc, TaskCancelled):
            self.skip("cancelled")
        else:
            self.fail(str(exc) or exc_type.__name__)
        return False


class StepLogger:
    """Writes activity-log entries for one task on behalf of one agent."""

    def __init__(self, store: "TaskStore", task_id: str, agent: str = "") -> None:
        self.store = store
        self.task_id = task_id
        self.agent = agent

    def _write(
        self,
        step: str,
        status: str,
        detail: Dict[str, Any],
        duration_ms: Optional[int] = None,
    ) -> Optional[ActivityLogEntry]:
        try:
            return self.store.record_log(
                self.task_id, step, status, detail=detail, duration_ms=duration_ms, agent=self.agent
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to log step %r for %s: %s", step, self.task_id, exc)
            return None

    def step(self, name: str, detail: Optional[Dict[str, Any]] = None) -> StepHandle:
        handle = StepHandle(self, name, detail or {})
        self._write(name, "started", handle.detail)
        return handle

    def info(self, name: str, detail: Optional[Dict[str, Any]] = None) -> None:
        self._write(name, "info", detail or {})

    def skipped(self, name: str, reason: str = "") -> None:
        self._write(name, "skipped", {"message": reason} if reason else {})
