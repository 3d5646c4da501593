# service/logging_utils.py
"""
Daily JSONL logs for activity and errors.

    $LOG_DIR/{ACTIVITY_LOG_PREFIX}-YYYY-MM-DD.jsonl
    $LOG_DIR/{ERROR_LOG_PREFIX}-YYYY-MM-DD.jsonl

Environment is read on every write, so a test (or a re-configured process)
can point LOG_DIR elsewhere without re-importing. Records are deep-redacted
and stamped with host/pid before being appended as one line.
"""

from __future__ import annotations

import contextlib
import datetime as _dt
import json
import os
import socket
from collections.abc import Iterable
from typing import Any

REDACTED = "***REDACTED***"

# Case-insensitive substrings of key names whose values are never logged
_DEFAULT_REDACT_KEYS = {
    "password",
    "token",
    "apikey",
    "api_key",
    "secret",
    "cron_key",
    "smtp_",
    "authorization",
    "cookie",
}

_HOSTNAME = socket.gethostname()
_PID = os.getpid()


# ---- Public API --------------------------------------------------------------


def write_activity_log(record: dict[str, Any]) -> None:
    """Append one activity record. Never mutates `record`; may raise on I/O errors."""
    _write_jsonl(_log_path_for_today(os.getenv("ACTIVITY_LOG_PREFIX", "activity")), record)


def write_error_log(record: dict[str, Any]) -> None:
    """Append one error record, parallel to the activity log."""
    _write_jsonl(_log_path_for_today(os.getenv("ERROR_LOG_PREFIX", "error")), record)


def get_activity_log_path() -> str:
    return _log_path_for_today(os.getenv("ACTIVITY_LOG_PREFIX", "activity"))


def redact(record: dict[str, Any], keys: set[str] | None = None) -> dict[str, Any]:
    """Deep copy of `record` with secret-looking keys scrubbed."""
    return _redact_deep(record, keys or _DEFAULT_REDACT_KEYS)


# ---- Internals ---------------------------------------------------------------


def _log_path_for_today(prefix: str) -> str:
    log_dir = os.getenv("LOG_DIR", "/app/local/logs")
    return os.path.join(log_dir, f"{prefix}-{_dt.date.today().isoformat()}.jsonl")


def _max_bytes() -> int:
    try:
        return int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0"))
    except ValueError:
        return 0


def _rotate_if_needed(path: str) -> None:
    """Size-based rotation on top of the per-day filenames; disabled when the limit is <= 0."""
    limit = _max_bytes()
    if limit <= 0:
        return
    try:
        too_big = os.path.getsize(path) >= limit
    except FileNotFoundError:
        return
    if too_big:
        with contextlib.suppress(FileNotFoundError):
            os.replace(path, f"{path}.{_dt.datetime.now():%Y%m%d-%H%M%S}")


def _scrub_bearer(value: str) -> str:
    if "bearer " not in value.lower():
        return value
    scheme, _, _rest = value.partition(" ")
    return f"{scheme} {REDACTED}"


def _key_matches(name: str, patterns: Iterable[str]) -> bool:
    n = name.lower()
    return any(p in n for p in patterns)


def _redact_deep(value: Any, patterns: Iterable[str]) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if isinstance(k, str) and _key_matches(k, patterns) else _redact_deep(v, patterns)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact_deep(v, patterns) for v in value]
    if isinstance(value, str):
        return _scrub_bearer(value)
    return value


def _write_jsonl(path: str, record: dict[str, Any]) -> None:
    payload = _redact_deep(record, _DEFAULT_REDACT_KEYS)
    meta = payload.get("_meta") if isinstance(payload.get("_meta"), dict) else {}
    payload["_meta"] = {**meta, "host": _HOSTNAME, "pid": _PID}

    # Serialize before touching the file so a bad record leaves no partial line.
    data = (json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str) + "\n").encode("utf-8")

    def _append() -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        _rotate_if_needed(path)
        fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)

    try:
        _append()
    except OSError:
        _append()  # one retry for transient failures
