# service/scheduler.py
from __future__ import annotations

import logging
import os
import threading
import time as _time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from datetime import tzinfo as _tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config_schema, runner
from .logging_utils import write_activity_log

LOG = logging.getLogger(__name__)

TRIGGER_KINDS = ("interval", "cron", "date", "daily_time")


# ---- Internal structures ----------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobSpec:
    id: str
    trigger: Any  # apscheduler BaseTrigger
    module: str
    kwargs: dict[str, Any]
    send_email: bool | None
    timeout_sec: int | None
    max_instances: int
    coalesce: bool
    misfire_grace_time: int | None
    summary: str | None
    email_to: list[str] | None = None
    email_cc: list[str] | None = None
    email_bcc: list[str] | None = None
    subject: str | None = None


# ---- Public controller ------------------------------------------------------


class SchedulerController:
    """Thin lifecycle wrapper so the CLI can stop() and join() the scheduler."""

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self._scheduler = scheduler
        self._stopped_evt = threading.Event()

    def stop(self) -> None:
        if self._scheduler.running:
            LOG.info("Shutting down scheduler...")
            self._scheduler.shutdown(wait=False)  # in-flight jobs finish on their own
        self._stopped_evt.set()

    def join(self, timeout: float | None = None) -> bool:
        return self._stopped_evt.wait(timeout=timeout)

    def get_job_ids(self) -> Iterable[str]:
        return [job.id for job in self._scheduler.get_jobs()]


# ---- Module API -------------------------------------------------------------


def start(config_path: str | None = None) -> SchedulerController:
    """
    Load configuration, schedule every job and start a BackgroundScheduler.

    APScheduler 3.x wants a pytz scheduler timezone; individual triggers may
    carry zoneinfo timezones of their own.
    """
    cfg = config_schema.load_config(config_path)
    tz = _resolve_timezone(cfg)
    job_defaults = {"coalesce": True, "max_instances": 1}

    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults=job_defaults,
        executors={"default": ThreadPoolExecutor(_int_or(cfg.get("executor_workers"), 10))},
        jobstores={"default": MemoryJobStore()},
    )

    jobs_cfg = cfg.get("jobs", [])
    if not isinstance(jobs_cfg, list):
        raise ValueError("config.jobs must be a list")

    for raw in jobs_cfg:
        try:
            spec = _make_job_spec(raw, default_job_defaults=job_defaults, tz=tz)
        except Exception:
            LOG.exception("Skipping job due to config error: %r", raw)
            continue
        _add_job(scheduler, spec)

    scheduler.start()
    LOG.info("Scheduler started with %d job(s).", len(scheduler.get_jobs()))
    return SchedulerController(scheduler)


# ---- Job specs ----------------------------------------------------------------


def _resolve_timezone(cfg: dict[str, Any]):
    tz_name = cfg.get("timezone") or os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Falling back to UTC timezone (unknown tz '%s')", tz_name)
        return pytz.UTC


def _trigger_block(raw: dict[str, Any]) -> dict[str, Any]:
    """Triggers may be nested under 'trigger' or sit at the job's top level."""
    if isinstance(raw.get("trigger"), dict):
        return raw["trigger"]
    return {k: raw[k] for k in TRIGGER_KINDS if k in raw}


def _make_job_spec(raw: dict[str, Any], default_job_defaults: dict[str, Any], tz) -> JobSpec:
    module = _require(raw, "module")
    return JobSpec(
        id=str(raw.get("id") or raw.get("name") or module),
        trigger=_build_trigger(_trigger_block(raw), tz),
        module=module,
        kwargs=dict(raw.get("kwargs") or {}),
        send_email=raw.get("send_email"),
        timeout_sec=_int_or(raw.get("timeout_sec"), None),
        max_instances=_int_or(raw.get("max_instances"), default_job_defaults.get("max_instances", 1)),
        coalesce=bool(raw.get("coalesce", default_job_defaults.get("coalesce", True))),
        misfire_grace_time=_int_or(raw.get("misfire_grace_time"), None),
        summary=raw.get("summary") or raw.get("description"),
        email_to=raw.get("email_to"),
        email_cc=raw.get("email_cc"),
        email_bcc=raw.get("email_bcc"),
        subject=raw.get("subject"),
    )


# ---- Triggers -----------------------------------------------------------------


def _tz(z: Any) -> _tzinfo | None:
    if not z:
        return None
    if isinstance(z, _tzinfo):
        return z
    return ZoneInfo(str(z))


def _build_trigger(trig_def: dict[str, Any], tz: Any) -> Any:
    """
    Build an APScheduler trigger from exactly one of:

      {"interval":   {weeks|days|hours|minutes|seconds, jitter?, start_date?, end_date?, timezone?}}
      {"cron":       "*/15 * * * *" | {second?, minute?, hour?, day?, day_of_week?, month?, ...}}
      {"date":       ISO | epoch | {"run_at": ISO|epoch, "timezone"?}}
      {"daily_time": {"time": "HH:MM[:SS]" | [...], "day_of_week"?, "timezone"?}}

    A block's own 'timezone' wins over the scheduler tz; a naive date.run_at
    is read in the scheduler tz. Raises ValueError on anything malformed.
    """
    if not isinstance(trig_def, dict):
        raise ValueError("trigger spec must be a dict")
    present = [k for k in TRIGGER_KINDS if trig_def.get(k) is not None]
    if len(present) != 1:
        raise ValueError("exactly one of {'interval','cron','date','daily_time'} must be provided")
    kind = present[0]
    builder = {
        "interval": _interval_trigger,
        "cron": _cron_trigger,
        "date": _date_trigger,
        "daily_time": _daily_time_trigger,
    }[kind]
    return builder(trig_def[kind], _tz(tz))


def _interval_trigger(spec: Any, default_tz: _tzinfo | None) -> IntervalTrigger:
    if not isinstance(spec, dict):
        raise ValueError("interval must be an object with time fields")
    allowed = {"weeks", "days", "hours", "minutes", "seconds", "jitter", "timezone", "start_date", "end_date"}
    unknown = set(spec) - allowed
    if unknown:
        raise ValueError(f"interval has unknown field(s): {sorted(unknown)}")

    def _non_negative(name: str) -> int:
        try:
            v = int(spec.get(name, 0))
        except (TypeError, ValueError) as err:
            raise ValueError(f"interval.{name} must be an integer") from err
        if v < 0:
            raise ValueError(f"interval.{name} must be >= 0")
        return v

    kwargs: dict[str, Any] = {
        unit: n for unit in ("weeks", "days", "hours", "minutes", "seconds") if (n := _non_negative(unit))
    }
    if not kwargs:
        raise ValueError("interval must be greater than 0 (provide at least one nonzero time field)")
    if _non_negative("jitter"):
        kwargs["jitter"] = _non_negative("jitter")
    for key in ("start_date", "end_date"):
        if key in spec:
            kwargs[key] = spec[key]
    return IntervalTrigger(timezone=_tz(spec.get("timezone")) or default_tz, **kwargs)


def _cron_trigger(spec: Any, default_tz: _tzinfo | None) -> CronTrigger:
    if isinstance(spec, str):
        fields = spec.split()
        if len(fields) not in (5, 6):
            raise ValueError(f"cron string must have 5 or 6 fields (got {len(fields)}): {spec!r}")
        return CronTrigger.from_crontab(spec, timezone=default_tz)
    if not isinstance(spec, dict):
        raise ValueError("cron must be a crontab string or an object")
    allowed = {"second", "minute", "hour", "day", "day_of_week", "month", "timezone", "start_date", "end_date", "jitter"}
    unknown = set(spec) - allowed
    if unknown:
        raise ValueError(f"cron has unknown field(s): {sorted(unknown)}")
    return CronTrigger(
        second=spec.get("second", 0),
        minute=spec.get("minute", 0),
        hour=spec.get("hour", 0),
        day=spec.get("day"),
        day_of_week=spec.get("day_of_week"),
        month=spec.get("month"),
        start_date=spec.get("start_date"),
        end_date=spec.get("end_date"),
        jitter=spec.get("jitter"),
        timezone=_tz(spec.get("timezone")) or default_tz,
    )


def _date_trigger(spec: Any, default_tz: _tzinfo | None) -> DateTrigger:
    if isinstance(spec, dict):
        run_at = spec.get("run_at")
        tzinfo = _tz(spec.get("timezone")) or default_tz
    else:
        run_at, tzinfo = spec, default_tz
    if run_at is None or run_at == "":
        raise ValueError("date trigger requires 'run_at' (or a non-empty scalar value)")

    if isinstance(run_at, (int, float)):
        dt = datetime.fromtimestamp(run_at, tz=tzinfo or timezone.utc)
    elif isinstance(run_at, datetime):
        dt = run_at
    else:
        try:
            dt = datetime.fromisoformat(str(run_at).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid date.run_at: {run_at!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tzinfo or timezone.utc)
    return DateTrigger(run_date=dt, timezone=dt.tzinfo)


def _parse_hms(s: str) -> tuple[int, int, int]:
    parts = s.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"daily_time.time must be 'HH:MM' or 'HH:MM:SS', got {s!r}")
    try:
        hh, mm, ss = int(parts[0]), int(parts[1]), int(parts[2]) if len(parts) == 3 else 0
    except ValueError as err:
        raise ValueError(f"daily_time.time must contain integers: {s!r}") from err
    time(hh, mm, ss)  # range check
    return hh, mm, ss


def _daily_time_trigger(spec: Any, default_tz: _tzinfo | None) -> Any:
    """One CronTrigger per exact time (no hour x minute cross product), OR-combined."""
    if not isinstance(spec, dict):
        raise ValueError("daily_time must be an object")
    unknown = set(spec) - {"time", "day_of_week", "timezone"}
    if unknown:
        raise ValueError(f"daily_time has unknown field(s): {sorted(unknown)}")
    times = spec.get("time")
    if not times:
        raise ValueError("daily_time requires 'time'")
    if isinstance(times, str):
        times = [times]
    if not isinstance(times, list):
        raise ValueError("daily_time.time must be a string or list of strings")

    tzinfo = _tz(spec.get("timezone")) or default_tz
    triggers = [
        CronTrigger(second=s, minute=m, hour=h, day_of_week=spec.get("day_of_week"), timezone=tzinfo)
        for h, m, s in sorted({_parse_hms(str(t)) for t in times})
    ]
    return triggers[0] if len(triggers) == 1 else OrTrigger(triggers)


def _preview_trigger(trigger: Any, tz: Any, count: int = 6, start: datetime | None = None) -> list[datetime]:
    """Next `count` fire times, stepping 1us past each hit so lookups move forward."""
    now = start or datetime.now(tz=tz)
    prev = now
    out: list[datetime] = []
    for _ in range(count):
        nxt = trigger.get_next_fire_time(prev, now)
        if nxt is None:
            break
        out.append(nxt)
        prev, now = nxt, nxt + timedelta(microseconds=1)
    return out


# ---- Registration ---------------------------------------------------------------


def _add_job(scheduler: BackgroundScheduler, spec: JobSpec) -> None:
    """
    Register a wrapper that runs the module through runner.run_module_once()
    with the job's kwargs, email routing and timeout, and records the outcome.
    """

    def _job_wrapper() -> None:
        started = _time.monotonic()
        LOG.info("Job[%s] starting (module=%s)", spec.id, spec.module)
        try:
            runner.run_module_once(
                spec.module,
                dict(spec.kwargs),
                send_email=spec.send_email if spec.send_email is not None else True,
                timeout_sec=spec.timeout_sec,
                trigger_type="scheduled",
                job_context={
                    "job_id": spec.id,
                    "module": spec.module,
                    "now_iso": datetime.now(timezone.utc).isoformat(),
                },
                email_to=spec.email_to,
                cc=spec.email_cc,
                bcc=spec.email_bcc,
                subject=spec.subject,
            )
        except Exception:
            LOG.exception("Job[%s] raised an exception.", spec.id)
            _write_activity(spec, status="error", duration_s=_time.monotonic() - started)
            return
        duration = _time.monotonic() - started
        LOG.info("Job[%s] finished in %.3fs", spec.id, duration)
        _write_activity(spec, status="ok", duration_s=duration)

    scheduler.add_job(
        func=_job_wrapper,
        trigger=spec.trigger,
        id=spec.id,
        max_instances=spec.max_instances,
        coalesce=spec.coalesce,
        misfire_grace_time=spec.misfire_grace_time,
        replace_existing=True,
    )

    if os.getenv("SCHEDULER_PREVIEW") == "1":
        preview = _preview_trigger(spec.trigger, scheduler.timezone, count=int(os.getenv("SCHEDULER_PREVIEW_COUNT", "6")))
        LOG.info("Preview[%s]: %s", spec.id, ", ".join(t.isoformat() for t in preview) or "(none)")

    job = scheduler.get_job(spec.id)
    LOG.info(
        "Registered job[%s] (module=%s, summary=%r) next_run_time=%s",
        spec.id,
        spec.module,
        spec.summary,
        getattr(job, "next_run_time", None),
    )


def _write_activity(spec: JobSpec, status: str, duration_s: float) -> None:
    try:
        write_activity_log({
            "ts": datetime.now(timezone.utc).isoformat(),
            "source": "scheduler",
            "event": "job_run",
            "job_id": spec.id,
            "module": spec.module,
            "status": status,
            "duration_ms": int(duration_s * 1000),
            "summary": spec.summary,
        })
    except Exception:
        LOG.debug("write_activity_log failed for job[%s]", spec.id, exc_info=True)


def _require(d: dict[str, Any], key: str) -> Any:
    if d.get(key) in (None, ""):
        raise ValueError(f"Missing required key: {key}")
    return d[key]


def _int_or(v: Any, default: int | None) -> int | None:
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default
