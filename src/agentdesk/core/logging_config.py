"""Centralized logging configuration for agentdesk.

Writes to stdout and to rotating files in the configured log directory.
Activity-log entries are mirrored to their own JSONL file so the live feed
can be reconstructed from logs alone::

    ~/.agentdesk/logs/
    ├── agentdesk.log     # All Python logger output (rotating)
    ├── activity.log      # Every ActivityLogEntry as written (JSONL)
    └── audit.jsonl       # Structured audit events (mirror)
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Optional

_log_dir: Optional[str] = None

activity_logger = logging.getLogger("agentdesk._activity")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".agentdesk" / "logs")
    return os.getenv("AGENTDESK_LOG_DIR", default)


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Configure stdout and file logging. Safe to call more than once."""
    global _log_dir
    _log_dir = log_dir
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "agentdesk.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(activity_logger, os.path.join(log_dir, "activity.log"))

    logging.getLogger("agentdesk").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    # message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_activity_central(record: dict[str, Any]) -> None:
    """Mirror one activity-log record to the dedicated activity log."""
    try:
        activity_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_audit_log_path() -> str:
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
