from __future__ import annotations

import pytest

from agentdesk.core import logging_config


@pytest.fixture(autouse=True)
def _isolated_log_dir(tmp_path, monkeypatch):
    """Keep central log mirrors out of the real home directory."""
    log_dir = tmp_path / "central-logs"
    monkeypatch.setenv("AGENTDESK_LOG_DIR", str(log_dir))
    monkeypatch.setattr(logging_config, "_log_dir", str(log_dir))
    yield
