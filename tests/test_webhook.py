"""Tests for Slack webhook ingestion: auth, retries, kill switch, hand-off."""
from __future__ import annotations

import json
import time

import httpx
import pytest

from agentdesk.core.dispatcher import Dispatcher, default_workers
from agentdesk.core.routing import WORKER_AGENTS
from agentdesk.core.tasks import TaskStore
from agentdesk.core.webhook import SlackWebhookHandler, is_stop_phrase, kill_switch_reply
from agentdesk.integrations.slack import SlackAdapter, SlackReplier, compute_signature

SECRET = "test-signing-secret"


class FakeSlackApi:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls.append((method, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "ts": f"ts-{len(self.calls)}"})

    def texts(self, method: str) -> list[str]:
        return [body["text"] for m, body in self.calls if m == method]


@pytest.fixture
def slack_api():
    return FakeSlackApi()


@pytest.fixture
def store(tmp_path):
    return TaskStore(data_dir=str(tmp_path / "data"))


@pytest.fixture
def handler(tmp_path, store, slack_api):
    adapter = SlackAdapter(
        bot_token="xoxb-test",
        signing_secret=SECRET,
        transport=httpx.MockTransport(slack_api.handler),
    )
    dispatcher = Dispatcher(
        store,
        workers=default_workers(WORKER_AGENTS),
        replier=SlackReplier(adapter),
        data_dir=str(tmp_path / "data"),
    )
    return SlackWebhookHandler(
        adapter,
        dispatcher,
        resolve_user={"U1": "user-1"}.get,
        data_dir=str(tmp_path / "data"),
    )


def _signed(payload: dict, retry_num: str | None = None, ts: str | None = None):
    body = json.dumps(payload).encode("utf-8")
    ts = ts or str(int(time.time()))
    headers = {
        "X-Slack-Request-Timestamp": ts,
        "X-Slack-Signature": compute_signature(SECRET, ts, body),
    }
    if retry_num is not None:
        headers["X-Slack-Retry-Num"] = retry_num
    return body, headers


def _message(text: str, user: str = "U1", **extra) -> dict:
    event = {"type": "message", "user": user, "text": text, "channel": "C1", "ts": "1.1"}
    event.update(extra)
    return {"type": "event_callback", "event_id": f"Ev-{text}", "event": event}


# ── Authentication ───────────────────────────────────────────

class TestAuthentication:
    def test_missing_secret_is_500(self, store):
        handler = SlackWebhookHandler(SlackAdapter(bot_token="x"), Dispatcher(store), resolve_user=lambda u: "user-1")
        body, headers = _signed({"type": "url_verification", "challenge": "c"})
        assert handler.handle(body, headers).status_code == 500

    def test_bad_signature_is_401(self, handler, store):
        body, headers = _signed(_message("research llamas"))
        headers["X-Slack-Signature"] = "v0=" + "0" * 64
        assert handler.handle(body, headers).status_code == 401
        assert store.list_tasks() == []

    def test_challenge_requires_signature(self, handler):
        body, headers = _signed({"type": "url_verification", "challenge": "c"})
        headers["X-Slack-Signature"] = "v0=bogus"
        assert handler.handle(body, headers).status_code == 401

    def test_challenge_echoed(self, handler):
        body, headers = _signed({"type": "url_verification", "challenge": "c-123"})
        resp = handler.handle(body, headers)
        assert resp.status_code == 200
        assert resp.body == {"challenge": "c-123"}

    def test_replayed_request_is_401(self, handler):
        body, headers = _signed(_message("research llamas"), ts=str(int(time.time()) - 600))
        assert handler.handle(body, headers).status_code == 401

    def test_lowercase_headers_accepted(self, handler):
        body, headers = _signed({"type": "url_verification", "challenge": "c"})
        lowered = {k.lower(): v for k, v in headers.items()}
        assert handler.handle(body, lowered).body == {"challenge": "c"}


# ── Filtering ────────────────────────────────────────────────

class TestFiltering:
    def test_retry_deliveries_short_circuit(self, handler, store, slack_api):
        body, headers = _signed(_message("research llamas"), retry_num="1")
        assert handler.handle(body, headers).status_code == 200
        assert store.list_tasks() == []
        assert slack_api.calls == []

    def test_retry_num_zero_is_processed(self, handler, store):
        body, headers = _signed(_message("research llamas"), retry_num="0")
        handler.handle(body, headers)
        assert len(store.list_tasks()) == 2

    @pytest.mark.parametrize("retry_num", ["00", "-1", "abc", ""])
    def test_non_positive_retry_num_is_processed(self, handler, store, retry_num):
        body, headers = _signed(_message("research llamas"), retry_num=retry_num)
        assert handler.handle(body, headers).status_code == 200
        assert len(store.list_tasks()) == 2

    def test_bot_messages_dropped(self, handler, store, slack_api):
        body, headers = _signed(_message("research llamas", bot_id="B1"))
        assert handler.handle(body, headers).status_code == 200
        assert store.list_tasks() == []
        assert slack_api.calls == []

    def test_mention_only_message_dropped(self, handler, store):
        body, headers = _signed(_message("<@UBOT>  "))
        handler.handle(body, headers)
        assert store.list_tasks() == []

    def test_unknown_user_dropped_with_200(self, handler, store):
        body, headers = _signed(_message("research llamas", user="U999"))
        assert handler.handle(body, headers).status_code == 200
        assert store.list_tasks() == []

    def test_malformed_body_still_200(self, handler):
        body = b"not json"
        ts = str(int(time.time()))
        headers = {"X-Slack-Request-Timestamp": ts, "X-Slack-Signature": compute_signature(SECRET, ts, body)}
        assert handler.handle(body, headers).status_code == 200


# ── Kill switch ──────────────────────────────────────────────

class TestKillSwitch:
    @pytest.mark.parametrize("text", ["stop", "STOP", " Halt ", "cancel", "kill", "stop all", "Kill Switch"])
    def test_stop_phrases(self, text):
        assert is_stop_phrase(text)

    @pytest.mark.parametrize("text", ["please stop the research", "stopwatch", "don't stop", ""])
    def test_not_stop_phrases(self, text):
        assert not is_stop_phrase(text)

    def test_stop_cancels_active_tasks(self, handler, store, slack_api):
        running = store.create_task("user-1", "research")
        store.start(running.id)
        queued = store.create_task("user-1", "coder", status="queued")
        body, headers = _signed(_message("<@UBOT> stop"))
        assert handler.handle(body, headers).status_code == 200

        assert store.get(running.id).status == "cancelled"
        assert store.get(queued.id).status == "cancelled"
        assert store.get(running.id).error == "Cancelled via Slack"
        assert slack_api.texts("chat.postMessage") == [kill_switch_reply(2)]
        assert "Stopped 2 task(s)" in kill_switch_reply(2)

    def test_stop_with_nothing_running(self, handler, slack_api):
        body, headers = _signed(_message("stop"))
        handler.handle(body, headers)
        assert slack_api.texts("chat.postMessage") == ["No active tasks to stop. All agents are idle."]

    def test_stop_phrase_inside_sentence_dispatches(self, handler, store):
        body, headers = _signed(_message("please stop the research"))
        handler.handle(body, headers)
        tasks = store.list_tasks()
        assert len(tasks) == 1
        assert tasks[0].agent == "dispatcher"
        assert tasks[0].status == "completed"


# ── Dispatch hand-off ────────────────────────────────────────

class TestDispatch:
    def test_placeholder_posted_then_edited(self, handler, store, slack_api):
        body, headers = _signed(_message("research llamas"))
        assert handler.handle(body, headers).status_code == 200

        assert slack_api.calls[0] == ("chat.postMessage", {"channel": "C1", "text": "_Thinking..._"})
        updates = [b for m, b in slack_api.calls if m == "chat.update"]
        assert updates[0]["ts"] == "ts-1"
        assert updates[0]["text"] == "[research] llamas"

        parent = next(t for t in store.list_tasks() if t.agent == "dispatcher")
        child = next(t for t in store.list_tasks() if t.agent == "research")
        assert child.parent_task_id == parent.id
        assert parent.input["source"] == "slack"
        assert parent.input["thinking_handle"] == "ts-1"
        assert child.status == "completed"
        assert parent.status == "completed"

    def test_dispatch_failure_still_acknowledged(self, handler, store, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(store, "create_task", boom)
        body, headers = _signed(_message("research llamas"))
        assert handler.handle(body, headers).status_code == 200

    def test_audit_written(self, handler, tmp_path):
        body, headers = _signed(_message("research llamas"))
        handler.handle(body, headers)
        with open(tmp_path / "data" / "audit.jsonl", "r", encoding="utf-8") as f:
            types = [json.loads(line)["type"] for line in f if line.strip()]
        assert "slack.message" in types
        assert "task.dispatched" in types
