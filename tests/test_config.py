from __future__ import annotations

from agentdesk.core.config import Settings, _parse_user_map


def test_defaults(monkeypatch) -> None:
    for key in (
        "AGENTDESK_PORT",
        "AGENTDESK_MAX_CONCURRENT_TASKS",
        "AGENTDESK_DAILY_TASK_LIMIT",
        "AGENTDESK_STALE_TASK_SECONDS",
        "AGENTDESK_API_TOKEN",
        "SLACK_USER_MAP",
        "AGENTDESK_DEFAULT_USER_ID",
    ):
        monkeypatch.delenv(key, raising=False)
    settings = Settings.from_env()
    assert settings.port == 18800
    assert settings.max_concurrent_tasks == 10
    assert settings.daily_task_limit == 200
    assert settings.stale_task_seconds == 600
    assert settings.api_token is None
    assert settings.slack_user_map == {}


def test_overrides(monkeypatch) -> None:
    monkeypatch.setenv("AGENTDESK_DAILY_TASK_LIMIT", "5")
    monkeypatch.setenv("AGENTDESK_DATA_DIR", "/tmp/agentdesk-data")
    monkeypatch.setenv("SLACK_USER_MAP", "U1:user-1, U2:user-2")
    settings = Settings.from_env()
    assert settings.daily_task_limit == 5
    assert settings.data_dir == "/tmp/agentdesk-data"
    assert settings.slack_user_map == {"U1": "user-1", "U2": "user-2"}


def test_parse_user_map_skips_malformed() -> None:
    assert _parse_user_map("U1:user-1,garbage,:x,U3:") == {"U1": "user-1"}


def test_resolve_slack_user(monkeypatch) -> None:
    monkeypatch.setenv("SLACK_USER_MAP", "U1:user-1")
    monkeypatch.setenv("AGENTDESK_DEFAULT_USER_ID", "owner")
    settings = Settings.from_env()
    assert settings.resolve_slack_user("U1") == "user-1"
    assert settings.resolve_slack_user("U9") == "owner"

    monkeypatch.delenv("AGENTDESK_DEFAULT_USER_ID")
    assert Settings.from_env().resolve_slack_user("U9") is None
