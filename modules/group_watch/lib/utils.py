from __future__ import annotations

import hashlib
import html
import os
from datetime import datetime, timezone
from typing import Any

_HTML_ESCAPE_QUOTE = True  # keep quotes escaped for attributes


def esc(s: str | None) -> str:
    """
    Escape text for HTML contexts (titles, URLs). Do NOT wrap or add tags.
    """
    if s is None:
        return ""
    return html.escape(str(s), quote=_HTML_ESCAPE_QUOTE)


def truthy(v: Any) -> bool:
    """
    Normalize common truthy inputs from env/kwargs.
    Accepts bools or strings like: '1', 'true', 'yes', 'on'.
    """
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return v != 0
    s = str(v).strip().lower()
    return s in {"1", "true", "yes", "on", "y", "t"}


def now_iso() -> str:
    """
    UTC ISO-8601 timestamp with 'Z' suffix.
    """
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def getenv_str(name: str, default: str | None = None) -> str | None:
    val = os.getenv(name)
    return val if val not in (None, "") else default


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def elapsed_label(start_ns: int, end_ns: int) -> str:
    """Seconds with one decimal, e.g. '2.5s'."""
    return f"{(end_ns - start_ns) / 1e9:.1f}s"


def sample(value: Any, limit: int = 300) -> str:
    """Short repr of a payload for log records."""
    text = repr(value)
    return text if len(text) <= limit else text[:limit] + "..."
