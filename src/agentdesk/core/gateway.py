from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from agentdesk import __version__
from agentdesk.core.audit import log_event
from agentdesk.core.collapse import collapse, render_feed
from agentdesk.core.config import Settings
from agentdesk.core.dispatcher import (
    Dispatcher,
    DispatchRequest,
    WorkQueue,
    default_workers,
)
from agentdesk.core.errors import DispatchRejected
from agentdesk.core.logging_config import setup_logging
from agentdesk.core.rate_limit import RateLimiter
from agentdesk.core.realtime import StatusChannel
from agentdesk.core.routing import WORKER_AGENTS
from agentdesk.core.tasks import TASK_STATUSES, TaskStore
from agentdesk.core.webhook import SlackWebhookHandler
from agentdesk.integrations.slack import SlackAdapter, SlackReplier

logger = logging.getLogger("agentdesk.gateway")

_SSE_KEEPALIVE_SECONDS = 15.0


class DispatchBody(BaseModel):
    message: str
    userId: str
    sourceChannel: Optional[str] = None
    sourceThinkingHandle: Optional[str] = None
    source: Optional[str] = "web"


class StopAllBody(BaseModel):
    user_id: str


def create_app() -> FastAPI:
    load_dotenv(override=False)

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    os.makedirs(settings.data_dir, exist_ok=True)
    os.makedirs(settings.log_dir, exist_ok=True)

    channel = StatusChannel()
    store = TaskStore(data_dir=settings.data_dir, channel=channel)
    slack = SlackAdapter(
        bot_token=settings.slack_bot_token or "",
        signing_secret=settings.slack_signing_secret or "",
    )
    intake = WorkQueue(workers=1, name="intake")
    runner = WorkQueue(workers=settings.dispatch_workers, name="agent")
    dispatcher = Dispatcher(
        store,
        workers=default_workers(WORKER_AGENTS),
        replier=SlackReplier(slack),
        intake=intake,
        runner=runner,
        max_concurrent_tasks=settings.max_concurrent_tasks,
        daily_task_limit=settings.daily_task_limit,
        stale_task_seconds=settings.stale_task_seconds,
        data_dir=settings.data_dir,
    )
    webhook = SlackWebhookHandler(
        slack,
        dispatcher,
        resolve_user=settings.resolve_slack_user,
        data_dir=settings.data_dir,
    )
    rate_limiter = RateLimiter(
        max_calls=settings.rate_limit_calls,
        window_seconds=settings.rate_limit_seconds,
    )

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        intake.start()
        runner.start()
        logger.info("agentdesk %s listening on %s:%s", __version__, settings.host, settings.port)
        yield
        channel.drop()
        intake.stop()
        runner.stop()

    app = FastAPI(title="agentdesk", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.channel = channel
    app.state.dispatcher = dispatcher

    def require_token(
        authorization: str = Header(default=""),
        x_api_token: str = Header(default=""),
    ) -> None:
        if not settings.api_token:
            return
        bearer = authorization[7:] if authorization.lower().startswith("bearer ") else ""
        if settings.api_token not in (bearer, x_api_token):
            raise HTTPException(status_code=401, detail="Invalid API token")

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    # ---- Slack Events API webhook ----

    @app.post("/slack/events")
    async def slack_events(request: Request) -> JSONResponse:
        raw_body = await request.body()
        result = await run_in_threadpool(webhook.handle, raw_body, dict(request.headers))
        return JSONResponse(status_code=result.status_code, content=result.body)

    # ---- tasks ----

    @app.post("/tasks/dispatch", dependencies=[Depends(require_token)])
    def dispatch_task(body: DispatchBody) -> dict[str, Any]:
        if not rate_limiter.allow(body.userId):
            raise HTTPException(
                status_code=429,
                detail="rate limited",
                headers={"Retry-After": str(rate_limiter.retry_after(body.userId))},
            )
        request = DispatchRequest.from_payload(body.model_dump())
        try:
            result = dispatcher.dispatch(request.user_id, request.message, request.source)
        except DispatchRejected as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
        return result.to_dict()

    @app.get("/tasks", dependencies=[Depends(require_token)])
    def list_tasks(user_id: Optional[str] = None, status: Optional[str] = None) -> dict[str, Any]:
        if status and status not in TASK_STATUSES:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        tasks = store.list_tasks(user_id=user_id, status=status)
        return {"tasks": [t.to_dict() for t in tasks]}

    @app.get("/tasks/{task_id}", dependencies=[Depends(require_token)])
    def get_task(task_id: str) -> dict[str, Any]:
        task = store.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        data = task.to_dict()
        data["children"] = [c.to_dict() for c in store.children(task_id)]
        return data

    @app.post("/tasks/stop-all", dependencies=[Depends(require_token)])
    def stop_all(body: StopAllBody) -> dict[str, Any]:
        ids = dispatcher.stop_all(body.user_id)
        return {"cancelled": len(ids), "cancelled_ids": ids}

    @app.post("/tasks/{task_id}/cancel", dependencies=[Depends(require_token)])
    def cancel_task(task_id: str) -> dict[str, Any]:
        task = store.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        ids = dispatcher.stop_one(task.user_id, task_id)
        return {"cancelled": len(ids), "status": store.get(task_id).status}

    # ---- activity ----

    @app.get("/activity", dependencies=[Depends(require_token)])
    def activity(
        user_id: Optional[str] = None,
        task_id: Optional[str] = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        if limit < 0:
            raise HTTPException(status_code=400, detail="limit must be non-negative")
        entries = store.activity(user_id=user_id, task_id=task_id)
        collapsed = collapse(entries)
        return {
            "entries": [e.to_dict() for e in entries[-limit:]] if limit else [],
            "collapsed": [e.to_dict() for e in collapsed[-limit:]] if limit else [],
            "feed": render_feed(entries, limit=limit),
        }

    @app.get("/events/{user_id}", dependencies=[Depends(require_token)])
    async def events(user_id: str, request: Request) -> StreamingResponse:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        async def stream():
            # Subscribe only once the body is actually streamed.
            sub = channel.subscribe(
                user_id,
                lambda event: loop.call_soon_threadsafe(queue.put_nowait, event),
                on_lost=lambda: loop.call_soon_threadsafe(queue.put_nowait, None),
            )
            log_event(settings.data_dir, "events.subscribe", {"user_id": user_id})
            try:
                yield ": connected\n\n"
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    if event is None:
                        break
                    yield f"event: {event.table}\ndata: {json.dumps(event.to_dict())}\n\n"
            finally:
                sub.close()

        return StreamingResponse(stream(), media_type="text/event-stream")

    return app
