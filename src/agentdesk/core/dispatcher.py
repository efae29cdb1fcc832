"""Task dispatch: admit a request, create task rows, hand work to agent workers.

Admission (:meth:`Dispatcher.dispatch`) is synchronous and cheap: it runs
the guards, creates a parent ``dispatcher`` task plus a queued child task
for the routed agent, and submits the worker run to a :class:`WorkQueue`.
The webhook path calls :meth:`Dispatcher.enqueue` instead, which only puts
the request on the queue and returns, so the HTTP response never waits on
admission or on the worker.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import queue
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from agentdesk.core.activity import StepLogger
from agentdesk.core.audit import log_event
from agentdesk.core.batch import BatchResult, process_in_batches
from agentdesk.core.errors import DispatchRejected, TaskCancelled
from agentdesk.core.routing import Route, keyword_route
from agentdesk.core.tasks import AgentTask, TaskStore

logger = logging.getLogger("agentdesk.dispatcher")

FAILURE_REPLY = ":x: Something went wrong. Try again."


@dataclass
class SourceContext:
    """Where a request came from and where its reply should go."""
    source: str = "web"                     # web | slack | cli
    channel: Optional[str] = None
    thinking_handle: Optional[str] = None   # placeholder message to edit in place
    delivery_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "channel": self.channel,
            "thinking_handle": self.thinking_handle,
            "delivery_id": self.delivery_id,
        }


@dataclass
class DispatchRequest:
    message: str
    user_id: str
    source: SourceContext = field(default_factory=SourceContext)

    def to_payload(self) -> dict:
        return {
            "message": self.message,
            "userId": self.user_id,
            "sourceChannel": self.source.channel,
            "sourceThinkingHandle": self.source.thinking_handle,
            "source": self.source.source,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "DispatchRequest":
        return cls(
            message=payload.get("message", ""),
            user_id=payload.get("userId", ""),
            source=SourceContext(
                source=payload.get("source") or "web",
                channel=payload.get("sourceChannel"),
                thinking_handle=payload.get("sourceThinkingHandle"),
            ),
        )


@dataclass
class DispatchResult:
    task_id: str
    child_task_id: Optional[str]
    intent: str
    agent: Optional[str]
    status: str             # completed | dispatched
    response: str

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "child_task_id": self.child_task_id,
            "intent": self.intent,
            "agent": self.agent,
            "status": self.status,
            "response": self.response,
        }


class Replier(Protocol):
    def reply(self, source: SourceContext, text: str) -> None: ...


class NullReplier:
    def reply(self, source: SourceContext, text: str) -> None:
        return None


class TaskContext:
    """What a worker gets: its task, a step logger, a cancellation token and a reply channel."""

    def __init__(
        self,
        store: TaskStore,
        task: AgentTask,
        request: DispatchRequest,
        route: Route,
        replier: Replier,
    ) -> None:
        self.store = store
        self.task = task
        self.request = request
        self.route = route
        self.replier = replier
        self.token = store.cancellation_token(task.id)
        self.log = StepLogger(store, task.id, agent=task.agent)
        self.replied = False
        self.awaiting_ci = False

    @property
    def query(self) -> str:
        return self.route.query

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def checkpoint(self) -> None:
        """Raise :class:`TaskCancelled` if the task was cancelled since the last check."""
        self.token.raise_if_cancelled()

    def reply(self, text: str) -> None:
        try:
            self.replier.reply(self.request.source, text)
            self.replied = True
        except Exception:  # noqa: BLE001
            logger.exception("Reply for %s failed", self.task.id)

    def add_cost(self, amount_usd: float) -> float:
        return self.store.add_cost(self.task.id, amount_usd)

    def await_ci(self, detail: Optional[Dict[str, Any]] = None) -> None:
        self.store.update_status(self.task.id, "awaiting_ci", strict=True)
        self.awaiting_ci = True
        self.log.info("awaiting_ci", detail or {})

    def run_batch(
        self,
        items: Sequence[Any],
        fn: Callable[[Any], object],
        step: str = "batch",
        batch_size: int = 50,
        delay_seconds: float = 0.0,
        key: Optional[Callable[[Any], str]] = None,
    ) -> BatchResult:
        """Process items in throttled batches, stopping between batches on cancellation."""
        handle = self.log.step(step, {"total": len(items)})
        result = process_in_batches(
            items,
            fn,
            batch_size=batch_size,
            delay_seconds=delay_seconds,
            key=key,
            should_stop=lambda: self.token.cancelled,
        )
        counts = {"processed": result.processed, "failed": result.failed}
        if self.token.cancelled:
            handle.skip("cancelled")
            raise TaskCancelled(self.task.id)
        if result.failed and not result.processed:
            handle.fail(f"all {result.failed} item(s) failed", counts)
        else:
            handle.done({**counts, "message": f"{result.processed} processed, {result.failed} failed"})
        return result


Worker = Callable[[TaskContext], Optional[Dict[str, Any]]]


class WorkQueue:
    """FIFO of jobs drained by a fixed number of daemon threads.

    ``submit`` returns immediately. A job submitted with a ``key`` that was
    already seen is dropped, so re-delivering the same request is harmless.
    """

    def __init__(self, workers: int = 2, name: str = "dispatch", remember_keys: int = 1000) -> None:
        self.name = name
        self.workers = max(1, workers)
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._remember_keys = remember_keys
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        with self._lock:
            if self._threads and any(t.is_alive() for t in self._threads):
                return
            self._threads = [
                threading.Thread(target=self._loop, daemon=True, name=f"{self.name}-{i}")
                for i in range(self.workers)
            ]
            for thread in self._threads:
                thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def submit(self, fn: Callable[..., Any], *args: Any, key: Optional[str] = None) -> bool:
        if key:
            with self._lock:
                if key in self._seen:
                    logger.info("%s: dropping duplicate job %s", self.name, key)
                    return False
                self._seen[key] = None
                while len(self._seen) > self._remember_keys:
                    self._seen.popitem(last=False)
        self.start()
        self._queue.put((fn, args))
        return True

    def join(self) -> None:
        """Block until every submitted job has finished."""
        self._queue.join()

    def _loop(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                fn, args = job
                fn(*args)
            except Exception:  # noqa: BLE001
                logger.exception("%s: job failed", self.name)
            finally:
                self._queue.task_done()


def _utc_midnight() -> datetime:
    return datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class Dispatcher:
    """Creates tasks for incoming requests and runs the routed agent worker."""

    def __init__(
        self,
        store: TaskStore,
        route: Callable[[str], Route] = keyword_route,
        workers: Optional[Dict[str, Worker]] = None,
        replier: Optional[Replier] = None,
        intake: Optional[WorkQueue] = None,
        runner: Optional[WorkQueue] = None,
        max_concurrent_tasks: int = 10,
        daily_task_limit: int = 200,
        stale_task_seconds: int = 600,
        data_dir: Optional[str] = None,
    ) -> None:
        self.store = store
        self.route = route
        self.replier: Replier = replier or NullReplier()
        self.intake = intake
        self.runner = runner
        self.max_concurrent_tasks = max_concurrent_tasks
        self.daily_task_limit = daily_task_limit
        self.stale_task_seconds = stale_task_seconds
        self.data_dir = data_dir
        self._workers: Dict[str, Worker] = dict(workers or {})

    def register(self, agent: str, worker: Worker) -> None:
        self._workers[agent] = worker

    @property
    def agents(self) -> List[str]:
        return sorted(self._workers)

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.data_dir:
            log_event(self.data_dir, event_type, payload)

    def _safe_reply(self, source: SourceContext, text: str) -> None:
        try:
            self.replier.reply(source, text)
        except Exception:  # noqa: BLE001
            logger.exception("Reply to %s failed", source.source)

    # ── admission ────────────────────────────────────────────

    def _check_admission(self, user_id: str) -> None:
        stale = self.store.fail_stale(user_id, self.stale_task_seconds)
        if stale:
            logger.warning("Failed %d stale task(s) for %s", len(stale), user_id)
        running = self.store.count_active(user_id)
        if running >= self.max_concurrent_tasks:
            raise DispatchRejected(
                "Too many tasks running. Please wait for some to complete.",
                status_code=429,
                running=running,
            )
        daily = self.store.count_created_since(user_id, _utc_midnight())
        if daily >= self.daily_task_limit:
            raise DispatchRejected(
                "Daily task limit reached. Try again tomorrow.",
                status_code=429,
                daily_count=daily,
            )

    def dispatch(
        self,
        user_id: str,
        message: str,
        source: Optional[SourceContext] = None,
    ) -> DispatchResult:
        source = source or SourceContext()
        message = (message or "").strip()
        if not message:
            raise DispatchRejected("Message is required", status_code=400)
        if not user_id:
            raise DispatchRejected("userId is required", status_code=400)

        self._check_admission(user_id)
        route = self.route(message)
        if route.agent and route.agent not in self._workers:
            raise DispatchRejected(f"No worker registered for agent '{route.agent}'", status_code=400)

        parent = self.store.create_task(
            user_id,
            "dispatcher",
            intent=route.summary,
            input={"message": message, **source.to_dict()},
        )
        self.store.start(parent.id)
        log = StepLogger(self.store, parent.id, agent="dispatcher")
        log.info("intent_parsed", {"intent": route.intent, "agent": route.agent, "brief": route.summary})
        self._audit("task.dispatched", {"task_id": parent.id, "user_id": user_id, "intent": route.intent})

        if route.agent is None:
            self.store.complete(parent.id, {"response": route.response})
            self._safe_reply(source, route.response)
            return DispatchResult(parent.id, None, route.intent, None, "completed", route.response)

        child = self.store.create_task(
            user_id,
            route.agent,
            intent=route.summary,
            status="queued",
            parent_task_id=parent.id,
            input={"query": route.query, "original_message": message, **source.to_dict()},
        )
        log.info("worker_dispatched", {"agent": route.agent, "child_task_id": child.id})
        request = DispatchRequest(message=message, user_id=user_id, source=source)
        if self.runner is not None:
            self.runner.submit(self._run_worker, child.id, parent.id, request, route)
        else:
            self._run_worker(child.id, parent.id, request, route)
        return DispatchResult(parent.id, child.id, route.intent, route.agent, "dispatched", route.response)

    def enqueue(self, request: DispatchRequest) -> bool:
        """Hand a request to the intake queue and return without waiting."""
        if self.intake is None:
            self._admit(request)
            return True
        return self.intake.submit(self._admit, request, key=request.source.delivery_id)

    def _admit(self, request: DispatchRequest) -> None:
        try:
            self.dispatch(request.user_id, request.message, request.source)
        except DispatchRejected as exc:
            logger.warning("Dispatch rejected for %s: %s", request.user_id, exc.reason)
            self._safe_reply(request.source, exc.reason)
        except Exception:  # noqa: BLE001
            logger.exception("Dispatch failed for %s", request.user_id)
            self._safe_reply(request.source, FAILURE_REPLY)

    # ── worker execution ─────────────────────────────────────

    def _run_worker(self, child_id: str, parent_id: str, request: DispatchRequest, route: Route) -> None:
        child = self.store.get(child_id)
        if child is None:
            return
        if not self.store.start(child_id):
            logger.info("Task %s not started (status %s)", child_id, child.status)
            if child.status == "cancelled":
                self.store.cancel(parent_id, reason=child.error or "Cancelled by user")
            return

        worker = self._workers[child.agent]
        ctx = TaskContext(self.store, child, request, route, self.replier)
        try:
            output = worker(ctx)
        except TaskCancelled:
            logger.info("Task %s stopped at a checkpoint", child_id)
            ctx.log.info("cancelled", {"message": "Stopped at checkpoint"})
            self.store.cancel(parent_id, reason=child.error or "Cancelled by user")
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("Worker %s crashed on %s", child.agent, child_id)
            error = f"{type(exc).__name__}: {exc}"
            ctx.log.info("worker_error", {"error": error})
            self.store.fail(child_id, error)
            self.store.fail(parent_id, f"Worker {child.agent} failed")
            ctx.reply(f":x: {child.agent} failed: {exc}")
            return

        if ctx.awaiting_ci:
            self.store.complete(parent_id, {"child_task_id": child_id, "child_status": "awaiting_ci"})
            return
        if not self.store.complete(child_id, output or {}):
            logger.info("Task %s finished after it was stopped; result discarded", child_id)
            if child.status == "cancelled":
                self.store.cancel(parent_id, reason=child.error or "Cancelled by user")
            else:
                self.store.fail(parent_id, child.error or f"Worker {child.agent} failed")
            return
        self.store.complete(parent_id, {"child_task_id": child_id})
        if output and isinstance(output.get("response"), str) and not ctx.replied:
            ctx.reply(output["response"])

    # ── cancellation ─────────────────────────────────────────

    def stop_all(self, user_id: str, reason: str = "Cancelled by user") -> List[str]:
        ids = self.store.cancel_many(user_id, reason=reason)
        self._audit("task.stop_all", {"user_id": user_id, "cancelled": len(ids), "reason": reason})
        return ids

    def stop_one(self, user_id: str, task_id: str, reason: str = "Cancelled by user") -> List[str]:
        ids = self.store.cancel_many(user_id, reason=reason, task_ids=[task_id])
        self._audit("task.stop_one", {"user_id": user_id, "task_id": task_id, "cancelled": len(ids)})
        return ids


def echo_worker(ctx: TaskContext) -> Dict[str, Any]:
    """Deterministic stand-in agent: logs a couple of steps and echoes the query."""
    with ctx.log.step("read-request", {"query": ctx.query}):
        ctx.checkpoint()
    ctx.checkpoint()
    text = f"[{ctx.task.agent}] {ctx.query}"
    with ctx.log.step("compose-reply"):
        ctx.checkpoint()
    return {"response": text}


def default_workers(agents: Iterable[str]) -> Dict[str, Worker]:
    return {agent: echo_worker for agent in agents}
