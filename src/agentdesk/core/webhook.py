"""Slack Events API ingestion.

:meth:`SlackWebhookHandler.handle` is the acknowledgement boundary: it
always answers 200 except for a bad signature (401) or a missing signing
secret (500). Everything after authentication runs inside ``_process``,
whose errors are logged and swallowed so Slack never retries because of
our own failures.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Callable, Mapping, Optional

from agentdesk.core.audit import log_event
from agentdesk.core.dispatcher import Dispatcher, DispatchRequest, SourceContext
from agentdesk.integrations.slack import SlackAdapter, strip_leading_mention

logger = logging.getLogger("agentdesk.webhook")

STOP_PHRASES = frozenset({"stop", "halt", "cancel", "kill", "stop all", "kill switch"})
THINKING_TEXT = "_Thinking..._"
KILL_SWITCH_REASON = "Cancelled via Slack"


def is_stop_phrase(text: str) -> bool:
    """True only when the whole message is a stop phrase ("please stop X" is not)."""
    return (text or "").strip().lower() in STOP_PHRASES


def kill_switch_reply(count: int) -> str:
    if count:
        return f":octagonal_sign: Stopped {count} task(s). All agents standing by."
    return "No active tasks to stop. All agents are idle."


def _retry_count(value: str) -> int:
    """Slack's retry number; anything unparseable counts as a first delivery."""
    try:
        return int(value.strip())
    except ValueError:
        return 0


@dataclass
class WebhookResponse:
    status_code: int = 200
    body: dict[str, Any] = field(default_factory=lambda: {"ok": True})


class SlackWebhookHandler:
    def __init__(
        self,
        adapter: SlackAdapter,
        dispatcher: Dispatcher,
        resolve_user: Callable[[str], Optional[str]],
        data_dir: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.adapter = adapter
        self.dispatcher = dispatcher
        self.resolve_user = resolve_user
        self.data_dir = data_dir
        self.clock = clock

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        lowered = {k.lower(): v for k, v in headers.items()}
        if not self.adapter.signing_secret:
            logger.error("Slack webhook called but SLACK_SIGNING_SECRET is not set")
            return WebhookResponse(500, {"error": "Slack signing secret not configured"})

        timestamp = lowered.get("x-slack-request-timestamp", "")
        signature = lowered.get("x-slack-signature", "")
        now = self.clock() if self.clock else None
        if not self.adapter.verify_signature(raw_body, timestamp, signature, now=now):
            logger.warning("Rejected Slack request with invalid signature")
            return WebhookResponse(401, {"error": "Invalid signature"})

        try:
            return self._process(raw_body, lowered)
        except Exception:  # noqa: BLE001
            logger.exception("Slack event processing failed")
            return WebhookResponse()

    def _process(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResponse:
        payload = json.loads(raw_body.decode("utf-8") or "{}")
        parsed = SlackAdapter.parse_event(payload)
        if parsed and parsed["type"] == "url_verification":
            return WebhookResponse(200, {"challenge": parsed["challenge"]})

        retry_num = headers.get("x-slack-retry-num", "")
        if _retry_count(retry_num) > 0:
            logger.info("Ignoring Slack retry #%s (%s)", retry_num, headers.get("x-slack-retry-reason", ""))
            return WebhookResponse()

        if not parsed or parsed["type"] != "message":
            return WebhookResponse()

        text = strip_leading_mention(parsed["text"], self.adapter.bot_user_id or None)
        channel = parsed["channel"]
        if not text or not channel:
            return WebhookResponse()

        user_id = self.resolve_user(parsed["sender"])
        if not user_id:
            logger.error("No user mapped for Slack sender %s; dropping message", parsed["sender"])
            return WebhookResponse()

        if is_stop_phrase(text):
            self._kill_switch(user_id, channel)
            return WebhookResponse()

        logger.info("Slack: [%s in %s] %s", parsed["sender"], channel, text[:80])
        thinking = self.adapter.post_message(channel, THINKING_TEXT)
        request = DispatchRequest(
            message=text,
            user_id=user_id,
            source=SourceContext(
                source="slack",
                channel=channel,
                thinking_handle=thinking,
                delivery_id=parsed["delivery_key"] or None,
            ),
        )
        accepted = self.dispatcher.enqueue(request)
        self._audit("slack.message", {
            "user_id": user_id,
            "channel": channel,
            "event_id": parsed["event_id"],
            "accepted": accepted,
        })
        return WebhookResponse()

    def _kill_switch(self, user_id: str, channel: str) -> None:
        ids = self.dispatcher.stop_all(user_id, reason=KILL_SWITCH_REASON)
        logger.warning("Kill switch from Slack: stopped %d task(s) for %s", len(ids), user_id)
        self.adapter.post_message(channel, kill_switch_reply(len(ids)))
        self._audit("slack.kill_switch", {"user_id": user_id, "channel": channel, "cancelled": len(ids)})

    def _audit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.data_dir:
            log_event(self.data_dir, event_type, payload)
