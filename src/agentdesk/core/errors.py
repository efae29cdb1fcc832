from __future__ import annotations


class AgentDeskError(Exception):
    """Base class for agentdesk domain errors."""


class TaskNotFound(AgentDeskError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class InvalidTransition(AgentDeskError):
    def __init__(self, task_id: str, current: str, requested: str) -> None:
        super().__init__(f"Task {task_id}: cannot move {current} -> {requested}")
        self.task_id = task_id
        self.current = current
        self.requested = requested


class DispatchRejected(AgentDeskError):
    """Raised when a dispatch request is refused before any task is created."""

    def __init__(self, reason: str, status_code: int = 400, **extra: object) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.extra = extra


class TaskCancelled(AgentDeskError):
    """Raised inside a worker when it reaches a checkpoint after cancellation."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} was cancelled")
        self.task_id = task_id


class OperationFailed(AgentDeskError):
    """A remote call completed but reported failure (e.g. non-2xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AttemptTimeout(AgentDeskError, TimeoutError):
    """A single retry attempt exceeded its time budget and was aborted."""


class ServerUnavailable(OperationFailed):
    """5xx from the gateway; worth retrying (cold start, restart)."""
