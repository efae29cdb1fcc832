"""Slack adapter using the Slack Web API and Events API.

Posts and edits messages via ``chat.postMessage`` / ``chat.update`` and
parses inbound Events API payloads. Request signature verification uses the
``SLACK_SIGNING_SECRET``.

Required env vars:
    SLACK_BOT_TOKEN      – Bot User OAuth Token (xoxb-...)
    SLACK_SIGNING_SECRET – Used to verify incoming event payloads
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import httpx

if TYPE_CHECKING:
    from agentdesk.core.dispatcher import SourceContext

logger = logging.getLogger("agentdesk.slack")

_API_BASE = "https://slack.com/api"
_MAX_TEXT_LENGTH = 4000
_CHUNK_MARGIN = 200
MAX_TIMESTAMP_SKEW_SECONDS = 300

_LEADING_MENTION = re.compile(r"^\s*<@([A-Z0-9]+)(?:\|[^>]*)?>")


def _split_text(text: str, max_len: int) -> list[str]:
    if len(text) <= max_len:
        return [text]
    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + max_len, len(text))
        chunks.append(text[start:end])
        start = end
    return chunks


def strip_leading_mention(text: str, bot_user_id: str | None = None) -> str:
    """Remove a leading ``<@U123>`` mention (only the bot's, when its id is known)."""
    match = _LEADING_MENTION.match(text or "")
    if not match:
        return (text or "").strip()
    if bot_user_id and match.group(1) != bot_user_id:
        return text.strip()
    return text[match.end():].strip()


def compute_signature(signing_secret: str, timestamp: str, body: bytes) -> str:
    basestring = b"v0:" + timestamp.encode("utf-8") + b":" + body
    digest = hmac.new(signing_secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return "v0=" + digest


@dataclass
class SlackAdapter:
    bot_token: str
    signing_secret: str = ""
    bot_user_id: str = ""
    transport: Optional[httpx.BaseTransport] = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    def _client(self, timeout: float = 15.0) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self.transport)

    def _call(self, client: httpx.Client, method: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        resp = client.post(f"{_API_BASE}/{method}", json=payload, headers=self._headers())
        if resp.status_code != 200:
            logger.error("Slack %s failed: %s %s", method, resp.status_code, resp.text[:500])
            return None
        data = resp.json()
        if not data.get("ok"):
            logger.error("Slack %s error: %s", method, data.get("error", "unknown"))
            return None
        return data

    # ── Outbound ──────────────────────────────────────────

    def post_message(self, channel: str, text: str, thread_ts: str | None = None) -> str | None:
        """Post a message; returns the ``ts`` handle of the first chunk, or None on failure."""
        if not text:
            text = "(empty response)"
        max_len = max(1, _MAX_TEXT_LENGTH - _CHUNK_MARGIN)
        first_ts: str | None = None
        with self._client() as client:
            for chunk in _split_text(text, max_len):
                payload: dict[str, Any] = {"channel": channel, "text": chunk}
                if thread_ts:
                    payload["thread_ts"] = thread_ts
                data = self._call(client, "chat.postMessage", payload)
                if data is None:
                    return first_ts
                if first_ts is None:
                    first_ts = data.get("ts")
        return first_ts

    def update_message(self, channel: str, ts: str, text: str) -> bool:
        """Edit the message ``ts`` in place; overflow beyond one chunk is posted after it."""
        if not text:
            text = "(empty response)"
        max_len = max(1, _MAX_TEXT_LENGTH - _CHUNK_MARGIN)
        chunks = _split_text(text, max_len)
        with self._client() as client:
            data = self._call(client, "chat.update", {"channel": channel, "ts": ts, "text": chunks[0]})
            if data is None:
                return False
            for chunk in chunks[1:]:
                if self._call(client, "chat.postMessage", {"channel": channel, "text": chunk}) is None:
                    break
        return True

    # ── Request signature verification ───────────────────

    @staticmethod
    def timestamp_is_fresh(timestamp: str, now: float | None = None) -> bool:
        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            return False
        current = time.time() if now is None else now
        return abs(int(current) - ts) <= MAX_TIMESTAMP_SKEW_SECONDS

    def verify_signature(
        self,
        body: bytes,
        timestamp: str,
        signature: str,
        now: float | None = None,
    ) -> bool:
        """Verify a Slack request signature.

        See https://api.slack.com/authentication/verifying-requests-from-slack
        """
        if not self.signing_secret:
            logger.error("Slack signing secret not configured")
            return False
        if not self.timestamp_is_fresh(timestamp, now):
            logger.warning("Slack request timestamp outside the %ss window", MAX_TIMESTAMP_SKEW_SECONDS)
            return False
        computed = compute_signature(self.signing_secret, timestamp, body)
        return hmac.compare_digest(computed.encode("utf-8"), (signature or "").encode("utf-8"))

    # ── Inbound parsing ──────────────────────────────────

    @staticmethod
    def parse_event(payload: dict[str, Any]) -> dict[str, Any] | None:
        """Parse a Slack Events API payload.

        Returns ``{"type": "url_verification", "challenge": ...}``, a message
        dict (``type="message"`` with sender, text, channel, ts, event_id,
        delivery_key), ``{"type": "bot"}`` for our own automated messages, or
        None for anything irrelevant.
        """
        if payload.get("type") == "url_verification":
            return {"type": "url_verification", "challenge": payload.get("challenge", "")}
        if payload.get("type") != "event_callback":
            return None

        event = payload.get("event") or {}
        if event.get("type") not in ("message", "app_mention"):
            return None
        if event.get("bot_id") or event.get("subtype") == "bot_message":
            return {"type": "bot"}
        # edits, deletes, joins...
        if event.get("subtype"):
            return None

        event_id = payload.get("event_id", "")
        return {
            "type": "message",
            "sender": event.get("user", ""),
            "text": event.get("text", "") or "",
            "channel": event.get("channel", ""),
            "thread_ts": event.get("thread_ts", ""),
            "ts": event.get("ts", ""),
            "team": payload.get("team_id", ""),
            "event_id": event_id,
            "delivery_key": event.get("client_msg_id") or event_id or event.get("ts", ""),
        }


class SlackReplier:
    """Delivers worker/dispatcher replies to the Slack message that triggered them."""

    def __init__(self, adapter: SlackAdapter) -> None:
        self.adapter = adapter

    def reply(self, source: "SourceContext", text: str) -> None:
        if source.source != "slack" or not source.channel:
            return
        if source.thinking_handle:
            if self.adapter.update_message(source.channel, source.thinking_handle, text):
                return
        self.adapter.post_message(source.channel, text)
