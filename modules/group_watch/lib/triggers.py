"""
Entry points exposed to the outside world (CLI, scheduler, runner):

  trigger_auto     cron-key protected; scrapes every active source group
  trigger_manual   explicit group URLs and limits
  abort            one run id, or every run the registry reports as RUNNING
  run_digest       one digest pass over all subscribers
  subscribe        add a subscriber and send the welcome digest
  unsubscribe      remove a subscriber
  list_subscribers subscribers with how many jobs each has received
  list_groups      tracked source groups
  add_groups       start tracking group URLs (optionally named)
  set_groups_active  include or exclude groups from auto runs
  remove_groups    stop tracking group URLs

Collaborators are built from Settings unless supplied through `Services`,
which is how tests swap in fakes. HTTP clients built here are closed when the
entry point returns.
"""

from __future__ import annotations

import hmac
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from . import logging_bridge
from .collector import ResultCollector
from .config import ConfigError, RunConfig, Settings, is_group_url
from .digest import DigestEngine
from .http_client import HttpClient
from .mailer import MailSender, SmtpDigestSender
from .models import PipelineSummary, SourceGroup, Subscriber
from .pipeline import Coordinator, PipelineError, open_store
from .run_control import RunController, RunRegistry, StoreRunRegistry, abort_runs
from .scrape_engine import ApifyEngine, EngineError, ScrapeEngine
from .store import DocumentStore
from .structuring import StructuringClient, Structurer
from .utils import getenv_str


class UnauthorizedError(PermissionError):
    """Presented cron key missing or wrong."""


@dataclass
class Services:
    engine: ScrapeEngine | None = None
    store: DocumentStore | None = None
    registry: RunRegistry | None = None
    structurer: Structurer | None = None
    sender: MailSender | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    _owned: list[str] = field(default_factory=list, repr=False)

    def close(self) -> None:
        """Close collaborators built for this call; injected ones are left open."""
        while self._owned:
            name = self._owned.pop()
            client = getattr(self, name)
            setattr(self, name, None)
            if client is not None:
                client.close()


# =============================================================================
# AUTH
# =============================================================================
def check_cron_key(presented: str | None, expected: str | None = None) -> None:
    expected = expected if expected is not None else getenv_str("CRON_SECRET_KEY")
    if not expected:
        raise ConfigError("CRON_SECRET_KEY is not configured.")
    if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logging_bridge.error({
            "component": "group_watch.triggers",
            "op": "unauthorized",
            "key_presented": bool(presented),
        })
        raise UnauthorizedError("Invalid or missing cron key.")


# =============================================================================
# WIRING
# =============================================================================
def _store(settings: Settings, svc: Services, started_ns: int) -> DocumentStore:
    if svc.store is None:
        svc.store = open_store(settings.sqlite_path, started_ns=started_ns)
    return svc.store


def _engine(settings: Settings, svc: Services) -> ScrapeEngine:
    if svc.engine is None:
        svc.engine = ApifyEngine(
            settings.apify_token_env,
            actor_id=settings.actor_id,
            base_url=settings.apify_base_url,
            http=HttpClient(timeout=settings.http_timeout_sec),
            control_http=HttpClient(timeout=settings.http_timeout_sec, retries=0),
            abort_timeout=settings.abort_timeout_sec,
        )
        svc._owned.append("engine")
    return svc.engine


def _registry(store: DocumentStore, svc: Services) -> RunRegistry:
    if svc.registry is None:
        svc.registry = StoreRunRegistry(store)
    return svc.registry


def _structurer(settings: Settings, svc: Services) -> Structurer:
    if svc.structurer is None:
        svc.structurer = StructuringClient(
            settings.structuring_url,
            settings.structuring_endpoint,
            http=HttpClient(timeout=settings.http_timeout_sec),
        )
        svc._owned.append("structurer")
    return svc.structurer


def register_sources(store: DocumentStore, urls: list[str]) -> int:
    """Add unknown group URLs to `sources` as active. Returns how many were new."""
    added = 0
    for url in urls:
        if store.insert_if_absent("sources", SourceGroup(url=url).to_doc()):
            added += 1
    return added


def active_source_urls(store: DocumentStore) -> list[str]:
    return [SourceGroup.from_doc(d).url for d in store.find("sources", {"is_active": True})]


def _orchestrate(settings: Settings, svc: Services, store: DocumentStore, config: RunConfig, started_ns: int) -> dict[str, Any]:
    try:
        engine = _engine(settings, svc)
    except EngineError as e:
        raise PipelineError(str(e), elapsed_sec=(time.perf_counter_ns() - started_ns) / 1e9) from e

    registry = _registry(store, svc)
    controller = RunController(
        engine,
        registry,
        poll_interval_sec=settings.poll_interval_sec,
        watchdog_sec=settings.watchdog_sec,
        abort_timeout_sec=settings.abort_timeout_sec,
        clock=svc.clock,
        sleep=svc.sleep,
    )
    coordinator = Coordinator(
        controller=controller,
        collector=ResultCollector(engine),
        store=store,
        structurer=_structurer(settings, svc),
        source_label=settings.source_label,
        batch_size=settings.structuring_batch_size,
        batch_delay_sec=settings.structuring_delay_sec,
        process_partial_results=settings.process_partial_results,
        sleep=svc.sleep,
    )
    summary = coordinator.orchestrate(config)
    return {
        "success": True,
        "message": f"Scraped {summary.total_posts} posts from {len(config.source_urls)} group(s); "
        f"{summary.job_extraction.saved_count} job(s) saved",
        **summary.to_dict(),
    }


# =============================================================================
# ENTRY POINTS
# =============================================================================
def trigger_auto(settings: Settings, presented_key: str | None = None, *, services: Services | None = None) -> dict[str, Any]:
    check_cron_key(presented_key if presented_key is not None else settings.cron_key)
    svc = services or Services()
    t0 = time.perf_counter_ns()
    store = _store(settings, svc, t0)

    register_sources(store, settings.source_urls)
    urls = active_source_urls(store)
    if not urls:
        logging_bridge.activity({"component": "group_watch.triggers", "op": "auto_no_sources"})
        return {
            "success": True,
            "message": "No active groups to scrape",
            **PipelineSummary(run_id="", status="SKIPPED", partial_processed=False).to_dict(),
        }
    try:
        return _orchestrate(settings, svc, store, settings.run_config(urls), t0)
    finally:
        svc.close()


def trigger_manual(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    if not settings.source_urls:
        raise ConfigError("Manual scraping requires at least one group URL.")
    bad = [u for u in settings.source_urls if not is_group_url(u)]
    if bad:
        raise ConfigError(f"Invalid Facebook group URL(s): {', '.join(bad)}")

    svc = services or Services()
    t0 = time.perf_counter_ns()
    store = _store(settings, svc, t0)
    register_sources(store, settings.source_urls)
    try:
        return _orchestrate(settings, svc, store, settings.run_config(), t0)
    finally:
        svc.close()


def abort(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    svc = services or Services()
    store = _store(settings, svc, time.perf_counter_ns())
    registry = _registry(store, svc)
    try:
        engine = _engine(settings, svc)
    except EngineError as e:
        return {"success": False, "error": str(e), "aborted": [], "errors": [], "total": 0}
    try:
        result = abort_runs(engine, registry, settings.run_id)
    finally:
        svc.close()
    logging_bridge.activity({
        "component": "group_watch.triggers",
        "op": "abort",
        "run_id": settings.run_id,
        "total": result["total"],
        "errors": len(result["errors"]),
    })
    return result


def run_digest(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    svc = services or Services()
    store = _store(settings, svc, time.perf_counter_ns())
    engine = DigestEngine(store, svc.sender or SmtpDigestSender(), limit=settings.digest_limit)
    report = engine.run()
    return {
        "success": True,
        "message": f"Sent {report.sent} digest(s) with {report.jobs_sent} job(s)",
        **report.to_dict(),
    }


# ---- subscribers ----


def subscribe(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    if not settings.email:
        raise ConfigError("'email' is required to subscribe.")
    svc = services or Services()
    store = _store(settings, svc, time.perf_counter_ns())
    engine = DigestEngine(store, svc.sender or SmtpDigestSender(), limit=settings.digest_limit)
    return engine.subscribe(settings.email)


def unsubscribe(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    if not settings.email:
        raise ConfigError("'email' is required to unsubscribe.")
    store = _store(settings, services or Services(), time.perf_counter_ns())
    removed = store.delete("subscribers", settings.email)
    logging_bridge.activity({
        "component": "group_watch.triggers",
        "op": "unsubscribe",
        "email": settings.email,
        "removed": removed,
    })
    result: dict[str, Any] = {"success": removed, "email": settings.email, "removed": removed}
    if not removed:
        result["error"] = "Subscriber not found"
    return result


def list_subscribers(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    store = _store(settings, services or Services(), time.perf_counter_ns())
    rows = []
    for doc in store.find("subscribers", newest_first=True):
        sub = Subscriber.from_doc(doc)
        rows.append({
            "email": sub.email,
            "created_at": sub.created_at,
            "last_sent_at": sub.last_sent_at,
            "jobs_sent": len(sub.sent_job_ids),
        })
    return {"success": True, "subscribers": rows, "total": len(rows)}


# ---- source groups ----


def list_groups(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    store = _store(settings, services or Services(), time.perf_counter_ns())
    groups = [SourceGroup.from_doc(d).to_doc() for d in store.find("sources")]
    return {
        "success": True,
        "groups": groups,
        "total": len(groups),
        "active": sum(1 for g in groups if g["is_active"]),
    }


def add_groups(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    bad = [u for u in settings.source_urls if not is_group_url(u)]
    if not settings.source_urls or bad:
        raise ConfigError(f"Invalid Facebook group URL(s): {', '.join(bad) or '(none given)'}")
    store = _store(settings, services or Services(), time.perf_counter_ns())
    added, existing = [], []
    for url in settings.source_urls:
        group = SourceGroup(url=url, name=settings.group_name)
        (added if store.insert_if_absent("sources", group.to_doc()) else existing).append(url)
    logging_bridge.activity({
        "component": "group_watch.triggers",
        "op": "add_groups",
        "added": added,
        "existing": existing,
    })
    return {"success": True, "added": added, "existing": existing, "total": len(added)}


def set_groups_active(settings: Settings, active: bool, *, services: Services | None = None) -> dict[str, Any]:
    """Flip is_active on tracked groups; inactive groups are skipped by auto runs."""
    store = _store(settings, services or Services(), time.perf_counter_ns())
    updated, missing = [], []
    for url in settings.source_urls:
        doc = store.find_one("sources", url)
        if doc is None:
            missing.append(url)
            continue
        group = SourceGroup.from_doc(doc)
        group.is_active = active
        store.upsert("sources", group.to_doc())
        updated.append(url)
    logging_bridge.activity({
        "component": "group_watch.triggers",
        "op": "activate_groups" if active else "deactivate_groups",
        "updated": updated,
        "missing": missing,
    })
    return {"success": bool(updated), "is_active": active, "updated": updated, "missing": missing}


def activate_groups(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    return set_groups_active(settings, True, services=services)


def deactivate_groups(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    return set_groups_active(settings, False, services=services)


def remove_groups(settings: Settings, *, services: Services | None = None) -> dict[str, Any]:
    """Stop tracking groups. Raw posts and jobs already collected from them stay."""
    store = _store(settings, services or Services(), time.perf_counter_ns())
    removed, missing = [], []
    for url in settings.source_urls:
        (removed if store.delete("sources", url) else missing).append(url)
    logging_bridge.activity({
        "component": "group_watch.triggers",
        "op": "remove_groups",
        "removed": removed,
        "missing": missing,
    })
    return {"success": bool(removed), "removed": removed, "missing": missing}
