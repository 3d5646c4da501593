# service/cli.py
"""
User-facing command-line entrypoints for the container.

Subcommands
-----------
serve
    Start the APScheduler loop via service.scheduler.start() and block until
    SIGINT/SIGTERM.

run MODULE [--kwargs k=v ...] [--no-email] [--print-html]
    Execute any module ad-hoc via runner.run_module_once(...).

trigger --cron-key KEY | scrape URL... | abort [RUN_ID] | digest
subscribe EMAIL | unsubscribe EMAIL | subscribers
groups [list|add|activate|deactivate|remove] [URL...] [--name NAME]
    Group-watch actions. Each runs modules.group_watch once (never emails
    through the runner) and prints the returned summary as JSON.

list-jobs / validate-config
    Inspect the scheduler configuration.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from service import config_schema as _config_schema
from service import logging_utils as L
from service import runner as _runner
from service import scheduler as _scheduler

LOG = logging.getLogger("service.cli")

GROUP_WATCH_MODULE = "modules.group_watch"


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


def _parse_kv_pairs(pairs: Iterable[str]) -> dict[str, Any]:
    """key=value strings to a dict; JSON-looking values are decoded."""
    out: dict[str, Any] = {}
    for raw in pairs:
        if "=" not in raw:
            raise argparse.ArgumentTypeError(f"--kwargs item must be key=value (got {raw!r})")
        k, v = (s.strip() for s in raw.split("=", 1))
        if not k:
            raise argparse.ArgumentTypeError(f"Invalid key in --kwargs item {raw!r}")
        try:
            out[k] = json.loads(v)
        except ValueError:
            out[k] = v
    return out


def _print_table(rows: list[tuple[str, str]], headers: tuple[str, str] = ("ID", "DETAILS")) -> None:
    w0 = max([len(headers[0]), *(len(r[0]) for r in rows)])
    w1 = max([len(headers[1]), *(len(r[1]) for r in rows)])
    sep = f"+-{'-' * w0}-+-{'-' * w1}-+"
    print(sep)
    print(f"| {headers[0].ljust(w0)} | {headers[1].ljust(w1)} |")
    print(sep)
    for c0, c1 in rows:
        print(f"| {c0.ljust(w0)} | {c1.ljust(w1)} |")
    print(sep)


def _job_rows(cfg: dict[str, Any]) -> list[tuple[str, str]]:
    rows = []
    for idx, j in enumerate(cfg.get("jobs") or []):
        jid = str(j.get("id") or j.get("name") or idx)
        desc = j.get("summary") or j.get("description") or f"{j.get('module')} {json.dumps(j.get('trigger') or {}, default=str)}"
        rows.append((jid, str(desc)))
    return rows


# ------------------------------ Subcommands ----------------------------------
def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        _config_schema.validate(_config_schema.load_config(args.config))
    except _config_schema.ConfigError as e:
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    print("OK: configuration is valid.")
    return 0


def cmd_list_jobs(args: argparse.Namespace) -> int:
    try:
        rows = _job_rows(_config_schema.load_config(args.config))
    except _config_schema.ConfigError as e:
        print(f"ERROR: failed to list jobs: {e}", file=sys.stderr)
        return 1
    if not rows:
        print("No jobs found in config.")
        return 0
    _print_table(rows, headers=("JOB", "DETAILS"))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    start_time = time.monotonic()
    kwargs = _parse_kv_pairs(args.kwargs or [])
    LOG.debug("Run module %s with kwargs=%s", args.module, kwargs)

    try:
        html, run_id = _runner.run_module_once(
            args.module,
            kwargs,
            send_email=not args.no_email,
            trigger_type="adhoc",
        )
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {e}", file=sys.stderr)
        _error_log("cli.run", args.module, kwargs, e, start_time)
        return 1

    L.write_activity_log({
        "ts": _now_iso(),
        "event": "cli_run",
        "run_id": run_id,
        "module": args.module,
        "trigger_type": "adhoc",
        "emailed": not args.no_email,
        "kwargs": kwargs,
        "duration_ms": int((time.monotonic() - start_time) * 1000),
    })
    if html and args.print_html:
        print("\n----- HTML OUTPUT -----\n")
        print(html)
    print("SUCCESS: HTML returned." if html else "DONE: Module run completed.")
    return 0


def _run_group_watch(kwargs: dict[str, Any], where: str) -> int:
    start_time = time.monotonic()
    try:
        result = _runner.execute_module(GROUP_WATCH_MODULE, kwargs=kwargs, send_email=False, trigger_type="adhoc")
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"FAILURE: {e}", file=sys.stderr)
        _error_log(where, GROUP_WATCH_MODULE, kwargs, e, start_time)
        return 1
    print(json.dumps(result.meta, indent=2, default=str))
    return 0 if result.meta.get("success", True) else 2


def cmd_trigger(args: argparse.Namespace) -> int:
    kwargs: dict[str, Any] = {"action": "auto"}
    if args.cron_key:
        kwargs["cron_key"] = args.cron_key
    else:
        kwargs["cron_key_env"] = "CRON_SECRET_KEY"  # local invocation: trust the env
    return _run_group_watch(kwargs, "cli.trigger")


def cmd_scrape(args: argparse.Namespace) -> int:
    kwargs: dict[str, Any] = {"action": "manual", "source_urls": list(args.urls)}
    for name in ("max_posts", "max_photos", "max_comments"):
        if getattr(args, name) is not None:
            kwargs[name] = getattr(args, name)
    return _run_group_watch(kwargs, "cli.scrape")


def cmd_abort(args: argparse.Namespace) -> int:
    kwargs: dict[str, Any] = {"action": "abort"}
    if args.run_id:
        kwargs["run_id"] = args.run_id
    return _run_group_watch(kwargs, "cli.abort")


def cmd_digest(args: argparse.Namespace) -> int:
    return _run_group_watch({"action": "digest"}, "cli.digest")


def cmd_subscribe(args: argparse.Namespace) -> int:
    return _run_group_watch({"action": "subscribe", "email": args.email}, "cli.subscribe")


def cmd_unsubscribe(args: argparse.Namespace) -> int:
    return _run_group_watch({"action": "unsubscribe", "email": args.email}, "cli.unsubscribe")


def cmd_subscribers(args: argparse.Namespace) -> int:
    return _run_group_watch({"action": "subscribers"}, "cli.subscribers")


_GROUP_OPS = {
    "list": "groups",
    "add": "add_group",
    "activate": "activate_group",
    "deactivate": "deactivate_group",
    "remove": "remove_group",
}


def cmd_groups(args: argparse.Namespace) -> int:
    kwargs: dict[str, Any] = {"action": _GROUP_OPS[args.op]}
    if args.urls:
        kwargs["source_urls"] = list(args.urls)
    if args.name:
        kwargs["group_name"] = args.name
    return _run_group_watch(kwargs, f"cli.groups.{args.op}")


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the scheduler until a termination signal arrives."""
    L.write_activity_log({"ts": _now_iso(), "event": "serve_start"})
    stop_event = threading.Event()

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        controller = _scheduler.start(config_path=args.config)
    except Exception as e:
        LOG.exception("Fatal error starting scheduler: %s", e)
        return 1
    LOG.info("Scheduler started with jobs: %s", ", ".join(controller.get_job_ids()) or "(none)")

    try:
        while not stop_event.is_set():
            time.sleep(0.3)
    except KeyboardInterrupt:
        return 130
    finally:
        controller.stop()
        controller.join(timeout=10.0)
        L.write_activity_log({"ts": _now_iso(), "event": "serve_stop"})
    return 0


def _error_log(where: str, module: str, kwargs: dict[str, Any], err: Exception, start_time: float) -> None:
    L.write_error_log({
        "ts": _now_iso(),
        "where": where,
        "module": module,
        "kwargs": kwargs,
        "error": repr(err),
        "duration_ms": int((time.monotonic() - start_time) * 1000),
    })


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="python -m service.cli", description="Group watch service tools")
    p.add_argument("--config", help="Path to config file (falls back to CONFIG_PATH env).")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the scheduler loop.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("run", help="Execute a module ad-hoc via runner.run_module_once().")
    sp.add_argument("module", help="Module path to run (e.g. modules.group_watch).")
    sp.add_argument("--kwargs", metavar="k=v", nargs="*", help="Keyword arguments (JSON values supported).")
    sp.add_argument("--no-email", action="store_true", help="Do everything except send email.")
    sp.add_argument("--print-html", action="store_true", help="Print returned HTML to stdout.")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("trigger", help="Scheduled-style scrape of every active source group.")
    sp.add_argument("--cron-key", help="Shared secret; defaults to $CRON_SECRET_KEY.")
    sp.set_defaults(func=cmd_trigger)

    sp = sub.add_parser("scrape", help="Manual scrape of explicit group URLs.")
    sp.add_argument("urls", nargs="+", metavar="URL")
    sp.add_argument("--max-posts", type=int, dest="max_posts")
    sp.add_argument("--max-photos", type=int, dest="max_photos")
    sp.add_argument("--max-comments", type=int, dest="max_comments")
    sp.set_defaults(func=cmd_scrape)

    sp = sub.add_parser("abort", help="Abort one run, or every running one.")
    sp.add_argument("run_id", nargs="?")
    sp.set_defaults(func=cmd_abort)

    sp = sub.add_parser("digest", help="Send one digest pass to all subscribers.")
    sp.set_defaults(func=cmd_digest)

    sp = sub.add_parser("subscribe", help="Add a subscriber and send the welcome digest.")
    sp.add_argument("email")
    sp.set_defaults(func=cmd_subscribe)

    sp = sub.add_parser("unsubscribe", help="Remove a subscriber.")
    sp.add_argument("email")
    sp.set_defaults(func=cmd_unsubscribe)

    sp = sub.add_parser("subscribers", help="List subscribers.")
    sp.set_defaults(func=cmd_subscribers)

    sp = sub.add_parser("groups", help="List or manage tracked source groups.")
    sp.add_argument("op", nargs="?", default="list", choices=tuple(_GROUP_OPS))
    sp.add_argument("urls", nargs="*", metavar="URL")
    sp.add_argument("--name", help="Display name for 'add'.")
    sp.set_defaults(func=cmd_groups)

    sp = sub.add_parser("list-jobs", help="Print all jobs from config.")
    sp.set_defaults(func=cmd_list_jobs)

    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    args = _build_parser().parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
