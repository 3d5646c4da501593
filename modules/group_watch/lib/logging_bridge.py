"""
Structured activity/error records for group_watch.

Every record is stamped with ``module="group_watch"`` (unless the caller set
one) and has credential-looking top-level keys masked before it reaches the
service JSONL writers. service.logging_utils masks nested values as well.
If the writers fail (read-only LOG_DIR, full disk) the record goes to the
stdlib logger instead so a scrape run never dies on logging.
"""
from __future__ import annotations

import logging
from typing import Any

from service import logging_utils

_MASK = "***REDACTED***"
_SECRET_NAMES = frozenset(
    {"token", "api_token", "apify_api_token", "apikey", "api_key", "cron_key", "password", "secret", "authorization", "bearer"}
)

_fallback_log = logging.getLogger("group_watch")


def _is_secret(key: Any) -> bool:
    name = str(key).lower()
    return name in _SECRET_NAMES or name.endswith(("_secret", "_token", "_password")) or name.startswith("smtp_")


def _prepare(record: dict[str, Any]) -> dict[str, Any]:
    out = {k: (_MASK if _is_secret(k) else v) for k, v in record.items()}
    out.setdefault("module", "group_watch")
    return out


def activity(record: dict[str, Any]) -> None:
    payload = _prepare(record)
    try:
        logging_utils.write_activity_log(payload)
    except OSError:
        _fallback_log.info("activity %s", payload)


def error(record: dict[str, Any]) -> None:
    payload = _prepare(record)
    try:
        logging_utils.write_error_log(payload)
    except OSError:
        _fallback_log.error("error %s", payload)
