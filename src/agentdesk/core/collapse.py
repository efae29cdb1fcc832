"""Turn the raw activity-log stream into a display-ready feed.

:func:`collapse` is a pure fold over entries in arrival order: a terminal
entry is merged into the ``started`` entry of the same ``(task_id, step)``
in place, so a step shows as one line whose position never moves. The
step stays open after a merge, so a redelivered terminal entry lands on the
same line. A terminal entry with no open ``started`` entry stands alone.
That includes the case where the terminal entry arrives first; the two
then render as separate lines.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from agentdesk.core.activity import TERMINAL_LOG_STATUSES, ActivityLogEntry

_GLYPHS = {
    "started": "…",
    "completed": "✓",
    "failed": "✗",
    "skipped": "↷",
    "info": "·",
}


@dataclass(frozen=True)
class DisplayEntry:
    id: str
    task_id: str
    agent: str
    step: str
    status: str
    timestamp: datetime
    duration_ms: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_log(cls, entry: ActivityLogEntry) -> "DisplayEntry":
        return cls(
            id=entry.id,
            task_id=entry.task_id,
            agent=entry.agent,
            step=entry.step,
            status=entry.status,
            timestamp=entry.created_at,
            duration_ms=entry.duration_ms,
            detail=dict(entry.detail),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "agent": self.agent,
            "step": self.step,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "detail": dict(self.detail),
        }


@dataclass(frozen=True)
class SessionDivider:
    session: int
    task_id: str

    def label(self) -> str:
        return f"── Session {self.session} ──"


def collapse(entries: Iterable[ActivityLogEntry]) -> List[DisplayEntry]:
    result: List[DisplayEntry] = []
    open_steps: Dict[Tuple[str, str], int] = {}

    for entry in entries:
        key = (entry.task_id, entry.step)
        if entry.status == "started":
            open_steps[key] = len(result)
            result.append(DisplayEntry.from_log(entry))
        elif entry.status in TERMINAL_LOG_STATUSES and key in open_steps:
            idx = open_steps[key]
            current = result[idx]
            result[idx] = replace(
                current,
                status=entry.status,
                duration_ms=entry.duration_ms,
                detail={**current.detail, **entry.detail},
            )
        else:
            result.append(DisplayEntry.from_log(entry))
    return result


def with_session_dividers(
    display: Iterable[DisplayEntry],
) -> List[Union[SessionDivider, DisplayEntry]]:
    """Insert a divider before the first entry and whenever the task changes."""
    out: List[Union[SessionDivider, DisplayEntry]] = []
    session = 0
    last_task: Optional[str] = None
    for item in display:
        if item.task_id != last_task:
            session += 1
            out.append(SessionDivider(session=session, task_id=item.task_id))
            last_task = item.task_id
        out.append(item)
    return out


def summarize_detail(detail: Dict[str, Any]) -> str:
    for key in ("message", "error"):
        value = detail.get(key)
        if isinstance(value, str) and value:
            return value
    query = detail.get("query")
    if isinstance(query, str) and query:
        return query[:50]
    brief = detail.get("brief")
    if isinstance(brief, str):
        return brief
    return ""


def agent_short(agent: str) -> str:
    return agent[:-len("-agent")] if agent.endswith("-agent") else agent


def format_entry(entry: DisplayEntry) -> str:
    parts = [
        entry.timestamp.strftime("%H:%M:%S"),
        _GLYPHS.get(entry.status, " "),
        f"{agent_short(entry.agent)[:12]:<12}",
        entry.step,
    ]
    summary = summarize_detail(entry.detail)
    if summary:
        parts.append(summary)
    line = " ".join(parts)
    if entry.duration_ms:
        line += f" ({entry.duration_ms}ms)"
    return line


def render_feed(entries: Iterable[ActivityLogEntry], limit: Optional[int] = None) -> List[str]:
    """Collapse, keep the newest ``limit`` display lines and render them with dividers."""
    display = collapse(entries)
    if limit is not None:
        display = display[-limit:] if limit else []
    lines: List[str] = []
    for item in with_session_dividers(display):
        if isinstance(item, SessionDivider):
            lines.append(item.label())
        else:
            lines.append(format_entry(item))
    return lines
