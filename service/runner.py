# service/runner.py
from __future__ import annotations

import importlib
import json
import logging
import os
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import escape
from typing import Any

from service import logging_utils
from service.emailer import EmailSendError, send_html

log = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on", "y", "t"}
_FALSE = {"0", "false", "no", "off", "n", "f"}

# Values that must reach the module exactly as configured
_VERBATIM_KEYS = {"cron_key", "run_id", "email"}


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def _env_flag(name: str, default: str = "") -> bool:
    return str(os.getenv(name, default)).strip().lower() in _TRUE


def _coerce_scalar(s: str) -> Any:
    """'true' -> True, '12' -> 12, '1.5' -> 1.5, JSON objects/arrays parsed; else the string."""
    s = s.strip()
    if (s.startswith("{") and s.endswith("}")) or (s.startswith("[") and s.endswith("]")):
        try:
            return json.loads(s)
        except ValueError:
            pass
    low = s.lower()
    if low in _TRUE - {"1"}:
        return True
    if low in _FALSE - {"0"}:
        return False
    if s.isdigit() or (s.startswith("-") and s[1:].isdigit()):
        return int(s)
    try:
        return float(s)
    except ValueError:
        return s


def _normalize_kwargs_types(kwargs: dict[str, object] | None) -> dict[str, object]:
    """
    Normalize job kwargs right before module.run(**kwargs):

      * keys ending in "_env": the value is an ENV VAR NAME; replace it with
        os.getenv(name, "") and do not coerce the result
      * other string values: JSON objects/arrays are parsed, bool and number
        forms are coerced, anything else stays a string
      * credential-like keys (cron_key) are never coerced
    """
    normalized: dict[str, object] = {}
    for k, v in (kwargs or {}).items():
        if isinstance(k, str) and k.endswith("_env") and isinstance(v, str):
            normalized[k] = os.getenv(v.strip(), "")
        elif isinstance(v, str) and k not in _VERBATIM_KEYS:
            normalized[k] = _coerce_scalar(v)
        else:
            normalized[k] = v
    return normalized


def _resolve_callable(module_path: str) -> Callable[..., Any]:
    """Import module and return its `run` callable."""
    mod = importlib.import_module(module_path)
    if not callable(getattr(mod, "run", None)):
        raise AttributeError(f"Module {module_path!r} does not define a callable `run(**kwargs)`.")
    return mod.run  # type: ignore[no-any-return]


def _wrap_html(title: str, body_inner_html: str) -> str:
    return f"""<html>
  <body style="font-family:ui-sans-serif,system-ui;line-height:1.5;margin:0;padding:8px">
    <h2>{escape(title)}</h2>
    {body_inner_html}
  </body>
</html>"""


def _emit_activity(record: dict[str, Any]) -> None:
    try:
        logging_utils.write_activity_log(record)
    except Exception as e:
        log.error("Failed to write activity record: %s", e)


@dataclass
class RunResult:
    ok: bool
    message: str
    html: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    subject: str | None = None
    run_id: str = ""
    emailed: bool = False


def _coerce_result(value: Any) -> RunResult:
    """
    Normalize a module's return value.

      None                          -> nothing to send
      str                           -> inner HTML
      (str, dict)                   -> inner HTML + meta ('message', 'subject')
      {'html': str, 'meta': dict}   -> same, as a dict
      dict without 'html'           -> meta only (group_watch summaries)
    """
    if value is None:
        return RunResult(ok=True, message="OK")
    if isinstance(value, str):
        return RunResult(ok=True, message="OK", html=value)
    if isinstance(value, dict) and "html" in value:
        html = value["html"] if isinstance(value.get("html"), str) else None
        meta = value.get("meta") if isinstance(value.get("meta"), dict) else {}
        return RunResult(ok=True, message=meta.get("message", "OK"), html=html, meta=meta, subject=meta.get("subject"))
    if isinstance(value, dict):
        return RunResult(ok=True, message=str(value.get("message", "OK")), meta=value, subject=value.get("subject"))
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str) and isinstance(value[1], dict):
        meta = value[1]
        return RunResult(ok=True, message=meta.get("message", "OK"), html=value[0], meta=meta, subject=meta.get("subject"))
    raise TypeError("Module return must be one of: None, str, (str, dict), dict, or {'html':..., 'meta':...}")


def _default_email_to() -> list[str]:
    """The configured From address doubles as the fallback recipient."""
    from .emailer import _resolve_smtp_settings  # local import to avoid cycles

    addr = (_resolve_smtp_settings().get("from_addr") or "").strip()
    return [addr] if addr else []


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def execute_module(
    module: str,
    kwargs: dict[str, object] | None = None,
    email_to: list[str] | None = None,
    subject: str | None = None,
    send_email: bool | None = True,
    trigger_type: str = "scheduled",
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    job_context: dict[str, object] | None = None,
    timeout_sec: int | None = None,
) -> RunResult:
    """
    Execute a module's run(**kwargs) once and return the full RunResult
    (meta included). Emails returned HTML when sending is enabled.

    Raises:
        Whatever the module raised, after the activity record is written.
    """
    run_id = uuid.uuid4().hex
    context: dict[str, Any] = {
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "started_at": now_iso(),
    }
    if job_context:
        context.update({k: v for k, v in job_context.items() if k not in context})

    kw = _normalize_kwargs_types(kwargs)
    run_callable = _resolve_callable(module)

    exc: BaseException | None = None
    t0 = datetime.now()
    try:
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="runner") as pool:
            fut = pool.submit(lambda: run_callable(**kw))
            value = fut.result(timeout=timeout_sec) if timeout_sec else fut.result()
        result = _coerce_result(value)
    except FutureTimeout:
        exc = TimeoutError(f"Module run timed out after {timeout_sec}s")
        result = RunResult(ok=False, message=str(exc), meta={"timeout_sec": timeout_sec})
    except Exception as e:
        exc = e
        result = RunResult(ok=False, message=str(e), meta={"exception_type": type(e).__name__})
    duration_ms = int((datetime.now() - t0).total_seconds() * 1000)
    result.run_id = run_id

    # Dry-run is a hard override; otherwise the explicit flag wins over SEND_EMAIL.
    effective_send = send_email if send_email is not None else _env_flag("SEND_EMAIL", "1")
    if _env_flag("SCHEDULED_MODULES_DRY_RUN"):
        effective_send = False

    email_message_id: str | None = None
    if result.html and effective_send:
        subj = result.subject or subject or f"{module} run - {'OK' if result.ok else 'FAILED'}"
        try:
            email_message_id = send_html(
                subject=subj,
                html=_wrap_html(subj, result.html),
                to=email_to or _default_email_to(),
                cc=cc,
                bcc=bcc,
            )
            result.emailed = True
        except EmailSendError as e:
            log.error("Email send failed: %s", e)

    _emit_activity({
        "ts": now_iso(),
        "run_id": run_id,
        "module": module,
        "trigger_type": trigger_type,
        "ok": result.ok,
        "message": result.message,
        "duration_ms": duration_ms,
        "emailed": result.emailed,
        "email_message_id": email_message_id,
        "email_to": email_to or [],
        "context": context,
        "kwargs": kw,
        "meta": result.meta,
    })

    if exc:
        raise exc
    return result


def run_module_once(
    module: str,
    kwargs: dict[str, object] | None = None,
    **options: Any,
) -> tuple[str | None, str]:
    """
    Execute a module once (see execute_module for options).

    Returns:
        (html_or_none, run_id)
    """
    result = execute_module(module, kwargs, **options)
    return result.html, result.run_id
