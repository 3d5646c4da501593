# service/config_schema.py
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the config is invalid."""


_EMAIL_FIELDS = ("email_to", "email_cc", "email_bcc")
_EMAIL_ENV_FIELDS = {f: f"{f}_env" for f in _EMAIL_FIELDS}
_TRIGGER_FIELDS = ("cron", "interval", "date", "daily_time")
_HMS_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")

# Jobs whose module is group_watch get their kwargs checked up front, so a
# typo in `action` fails validate-config instead of the first scheduled run.
_GROUP_WATCH_MODULES = {"modules.group_watch", "group_watch"}
_GROUP_WATCH_ACTIONS = (
    "auto",
    "manual",
    "abort",
    "digest",
    "subscribe",
    "unsubscribe",
    "subscribers",
    "groups",
    "add_group",
    "activate_group",
    "deactivate_group",
    "remove_group",
)
_GROUP_WATCH_URL_ACTIONS = ("manual", "add_group", "activate_group", "deactivate_group", "remove_group")


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration from `path`, else $CONFIG_PATH, else an
    empty default. Returns a dict with at least "jobs" and "timezone".
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using empty default config.")
        cfg: dict[str, Any] = {"jobs": []}
    else:
        cfg = _read_any(resolved_path)
    _apply_top_level_defaults(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    """Raise ConfigError on the first problem found."""
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")

    jobs = cfg.get("jobs")
    if jobs is None:
        raise ConfigError("Missing required top-level 'jobs' list.")
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")

    tz = cfg.get("timezone")
    if tz is not None and not isinstance(tz, str):
        raise ConfigError("'timezone' must be a string if provided.")

    seen_ids: set[str] = set()
    for idx, job in enumerate(jobs):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        module = job.get("module")
        if not isinstance(module, str) or not module.strip():
            raise ConfigError(f"Job {idx}: 'module' is required and must be a non-empty string.")

        job_id = _derive_job_id(job, idx)
        if job_id in seen_ids:
            raise ConfigError(f"Duplicate job id '{job_id}'.")
        seen_ids.add(job_id)

        kind, value = _single_trigger(job, job_id)
        _TRIGGER_CHECKS[kind](value, job_id)

        for b in ("coalesce", "send_email"):
            if b in job:
                _to_bool(job[b], field=b, job_id=job_id)
        for n, allow_zero in (("timeout_sec", True), ("max_instances", False), ("misfire_grace_time", True)):
            if n in job:
                _to_int(job[n], field=n, job_id=job_id, allow_zero=allow_zero)

        if "kwargs" in job and not isinstance(job["kwargs"], dict):
            raise ConfigError(f"Job '{job_id}': 'kwargs' must be a dict if provided.")
        if module.strip() in _GROUP_WATCH_MODULES:
            _validate_group_watch_kwargs(job.get("kwargs") or {}, job_id)

        for f in _EMAIL_FIELDS:
            if f in job:
                job[f] = _as_str_list(job[f], field=f, job_id=job_id)

        for opt_str in ("subject", "summary", "description"):
            if opt_str in job and not isinstance(job[opt_str], str):
                raise ConfigError(f"Job '{job_id}': '{opt_str}' must be a string if provided.")


# ---- Triggers ---------------------------------------------------------------


def _single_trigger(job: dict[str, Any], job_id: str) -> tuple[str, Any]:
    """Exactly one trigger, nested under 'trigger' or at the job's top level, never both."""
    if "trigger" in job:
        container = job["trigger"]
        if not isinstance(container, dict):
            raise ConfigError(f"Job '{job_id}': 'trigger' must be an object when present.")
        also_top_level = [k for k in _TRIGGER_FIELDS if k in job]
        if also_top_level:
            raise ConfigError(f"Job '{job_id}': do not mix top-level triggers {also_top_level} with nested 'trigger'.")
    else:
        container = job
    present = [k for k in _TRIGGER_FIELDS if k in container]
    if len(present) != 1:
        raise ConfigError(f"Job '{job_id}': exactly one trigger required among {', '.join(_TRIGGER_FIELDS)}.")
    return present[0], container[present[0]]


def _check_interval(value: Any, job_id: str) -> None:
    if not isinstance(value, dict):
        raise ConfigError(f"Job '{job_id}': interval must be an object of time kwargs.")
    for k, v in value.items():
        if k in ("weeks", "days", "hours", "minutes", "seconds", "jitter"):
            _to_int(v, field=f"interval.{k}", job_id=job_id, allow_zero=True)


def _check_cron(value: Any, job_id: str) -> None:
    if isinstance(value, str):
        if len(value.split()) not in (5, 6):
            raise ConfigError(f"Job '{job_id}': cron string must have 5 or 6 fields.")
    elif not isinstance(value, dict):
        raise ConfigError(f"Job '{job_id}': cron must be a crontab string or an object.")


def _check_date(value: Any, job_id: str) -> None:
    run_at = value.get("run_at") if isinstance(value, dict) else value
    if isinstance(run_at, bool) or not isinstance(run_at, (str, int, float)) or run_at == "":
        raise ConfigError(f"Job '{job_id}': date must be an ISO-8601 string, epoch seconds, or {{run_at: ...}}.")


def _check_daily_time(value: Any, job_id: str) -> None:
    if not isinstance(value, dict):
        raise ConfigError(f"Job '{job_id}': daily_time must be an object with 'time'.")
    times = value.get("time")
    if isinstance(times, str):
        times = [times]
    if not isinstance(times, list) or not times:
        raise ConfigError(f"Job '{job_id}': daily_time.time must be 'HH:MM[:SS]' or a list of them.")
    for t in times:
        m = _HMS_RE.match(str(t).strip())
        if not m:
            raise ConfigError(f"Job '{job_id}': daily_time.time {t!r} must match HH:MM[:SS] (24h).")
        hour, minute, second = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
        if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
            raise ConfigError(f"Job '{job_id}': daily_time.time {t!r} out of range.")


_TRIGGER_CHECKS = {
    "interval": _check_interval,
    "cron": _check_cron,
    "date": _check_date,
    "daily_time": _check_daily_time,
}


def _validate_group_watch_kwargs(kwargs: dict[str, Any], job_id: str) -> None:
    action = str(kwargs.get("action", "auto")).strip().lower()
    if action not in _GROUP_WATCH_ACTIONS:
        raise ConfigError(f"Job '{job_id}': kwargs.action must be one of {', '.join(_GROUP_WATCH_ACTIONS)}.")
    if action == "auto" and not (kwargs.get("cron_key") or kwargs.get("cron_key_env")):
        raise ConfigError(f"Job '{job_id}': action 'auto' needs cron_key or cron_key_env.")
    if action in ("subscribe", "unsubscribe") and not kwargs.get("email"):
        raise ConfigError(f"Job '{job_id}': action '{action}' needs an email.")
    urls = kwargs.get("source_urls")
    if urls is not None and not (isinstance(urls, list) and all(isinstance(u, str) for u in urls)):
        raise ConfigError(f"Job '{job_id}': kwargs.source_urls must be a list of strings.")
    if action in _GROUP_WATCH_URL_ACTIONS and not urls:
        raise ConfigError(f"Job '{job_id}': action '{action}' needs source_urls.")


# ---- Normalization ------------------------------------------------------------


def _apply_top_level_defaults(cfg: dict[str, Any]) -> None:
    if not isinstance(cfg.get("jobs"), list):
        cfg["jobs"] = []

    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ", "UTC")

    normalized_jobs: list[dict[str, Any]] = []
    for idx, job in enumerate(cfg["jobs"]):
        if not isinstance(job, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")

        job_copy = dict(job)
        job_copy["id"] = _derive_job_id(job_copy, idx)

        # email_*_env names an env var holding a comma list; the name itself is dropped
        for target, env_key in _EMAIL_ENV_FIELDS.items():
            if env_key in job_copy:
                raw = job_copy.pop(env_key)
                if isinstance(raw, str):
                    value = os.getenv(raw.strip(), "")
                    job_copy[target] = [e.strip() for e in value.split(",") if e.strip()]

        for b in ("coalesce", "send_email"):
            if b in job_copy:
                job_copy[b] = _to_bool(job_copy[b], field=b, job_id=job_copy["id"])
        for n, allow_zero in (("timeout_sec", True), ("max_instances", False), ("misfire_grace_time", True)):
            if n in job_copy:
                job_copy[n] = _to_int(job_copy[n], field=n, job_id=job_copy["id"], allow_zero=allow_zero)
        for f in _EMAIL_FIELDS:
            if f in job_copy:
                job_copy[f] = _as_str_list(job_copy[f], field=f, job_id=job_copy["id"])

        normalized_jobs.append(job_copy)

    cfg["jobs"] = normalized_jobs


def _derive_job_id(job: dict[str, Any], idx: int) -> str:
    for key in ("id", "name", "module"):
        v = job.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return f"job_{idx}"


def _as_str_list(value: Any, *, field: str, job_id: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        s = value.strip()
        return [s] if s else []
    if isinstance(value, list):
        out: list[str] = []
        for i, item in enumerate(value):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"Job '{job_id}': {field}[{i}] must be a non-empty string.")
            out.append(item.strip())
        return out
    raise ConfigError(f"Job '{job_id}': '{field}' must be a string or list of strings.")


def _to_bool(value: Any, *, field: str, job_id: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Job '{job_id}': '{field}' must be a boolean (or boolean-like string).")


def _to_int(value: Any, *, field: str, job_id: str, allow_zero: bool) -> int:
    try:
        iv = int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"Job '{job_id}': '{field}' must be an integer.") from err
    if iv < 0 or (iv == 0 and not allow_zero):
        raise ConfigError(f"Job '{job_id}': '{field}' must be >= {'0' if allow_zero else '1'} (got {iv}).")
    return iv


# ---- Reading ------------------------------------------------------------------


def _read_any(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}: {e}") from e

    if path.lower().endswith((".yml", ".yaml")):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError("Top-level YAML must be a mapping/object.")
        return data

    # .json and unknown extensions
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level JSON must be an object.")
    return data
