from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _split_csv(raw: str) -> list[str]:
    return [v.strip() for v in raw.split(",") if v.strip()]


def _parse_user_map(raw: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for item in _split_csv(raw):
        if ":" not in item:
            continue
        external, internal = item.split(":", 1)
        if external.strip() and internal.strip():
            mapping[external.strip()] = internal.strip()
    return mapping


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    host: str
    port: int
    api_token: str | None
    slack_bot_token: str | None
    slack_signing_secret: str | None
    slack_user_map: dict[str, str]
    default_user_id: str | None
    max_concurrent_tasks: int
    daily_task_limit: int
    stale_task_seconds: int
    dispatch_workers: int
    rate_limit_calls: int
    rate_limit_seconds: int

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".agentdesk")
        return Settings(
            log_level=os.getenv("AGENTDESK_LOG_LEVEL", "info"),
            log_dir=os.getenv("AGENTDESK_LOG_DIR") or str(Path(default_home) / "logs"),
            data_dir=os.getenv("AGENTDESK_DATA_DIR") or str(Path(default_home) / "data"),
            host=os.getenv("AGENTDESK_HOST", "127.0.0.1"),
            port=int(os.getenv("AGENTDESK_PORT", "18800")),
            api_token=os.getenv("AGENTDESK_API_TOKEN") or None,
            slack_bot_token=os.getenv("SLACK_BOT_TOKEN") or None,
            slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET") or None,
            slack_user_map=_parse_user_map(os.getenv("SLACK_USER_MAP", "")),
            default_user_id=os.getenv("AGENTDESK_DEFAULT_USER_ID") or None,
            max_concurrent_tasks=int(os.getenv("AGENTDESK_MAX_CONCURRENT_TASKS", "10")),
            daily_task_limit=int(os.getenv("AGENTDESK_DAILY_TASK_LIMIT", "200")),
            stale_task_seconds=int(os.getenv("AGENTDESK_STALE_TASK_SECONDS", "600")),
            dispatch_workers=int(os.getenv("AGENTDESK_DISPATCH_WORKERS", "2")),
            rate_limit_calls=int(os.getenv("AGENTDESK_RATE_LIMIT_CALLS", "30")),
            rate_limit_seconds=int(os.getenv("AGENTDESK_RATE_LIMIT_SECONDS", "60")),
        )

    def resolve_slack_user(self, slack_user: str) -> str | None:
        """Map a Slack user id to an internal user id, falling back to the default owner."""
        if slack_user and slack_user in self.slack_user_map:
            return self.slack_user_map[slack_user]
        return self.default_user_id
