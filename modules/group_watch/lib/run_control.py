"""
Remote run lifecycle: start, bounded polling, watchdog abort.

    RUNNING -> SUCCEEDED | FAILED | ABORTED

The controller never waits longer than the watchdog cap plus one poll
interval plus one abort budget. Each status poll is given at most the time left
on the watchdog, and the primary and direct abort attempts share the budget. Abort is best-effort: a failed abort is
logged and the caller still goes on to collect whatever the run produced.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from . import logging_bridge
from .config import RunConfig
from .models import RunStatus, ScrapeRun
from .scrape_engine import ScrapeEngine
from .store import DocumentStore
from .utils import now_iso


# =============================================================================
# RUN REGISTRY
# =============================================================================
class RunRegistry(Protocol):
    def register(self, run: ScrapeRun) -> None: ...

    def deregister(self, run: ScrapeRun) -> None: ...

    def get(self, run_id: str) -> ScrapeRun | None: ...

    def running(self) -> list[ScrapeRun]: ...


class MemoryRunRegistry:
    """Process-local registry; enough for tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._runs: dict[str, ScrapeRun] = {}

    def register(self, run: ScrapeRun) -> None:
        self._runs[run.run_id] = run

    def deregister(self, run: ScrapeRun) -> None:
        self._runs.pop(run.run_id, None)

    def get(self, run_id: str) -> ScrapeRun | None:
        return self._runs.get(run_id)

    def running(self) -> list[ScrapeRun]:
        return [r for r in self._runs.values() if not r.is_terminal]


class StoreRunRegistry:
    """
    Registry persisted in the document store's `runs` collection, so a later
    process (e.g. the abort command) sees runs started elsewhere. Deregistering
    keeps the record with its terminal status as run history.
    """

    def __init__(self, store: DocumentStore):
        self._store = store

    def register(self, run: ScrapeRun) -> None:
        self._store.upsert("runs", run.to_doc())

    def deregister(self, run: ScrapeRun) -> None:
        self._store.upsert("runs", run.to_doc())

    def get(self, run_id: str) -> ScrapeRun | None:
        doc = self._store.find_one("runs", run_id)
        return ScrapeRun.from_doc(doc) if doc else None

    def running(self) -> list[ScrapeRun]:
        return [ScrapeRun.from_doc(d) for d in self._store.find("runs", {"status": RunStatus.RUNNING.value})]


# =============================================================================
# ABORT (shared by the abort entry point and the watchdog's primary path)
# =============================================================================
def abort_runs(
    engine: ScrapeEngine,
    registry: RunRegistry,
    run_id: str | None = None,
    *,
    timeout: float | None = None,
) -> dict[str, Any]:
    """
    Abort one run, or every run the registry reports as RUNNING.

    Returns {"success", "aborted": [{"run_id", "status"}], "errors": [...], "total"}.
    """
    if run_id:
        targets = [registry.get(run_id) or ScrapeRun(run_id=run_id, started_at="")]
    else:
        targets = registry.running()
        if not targets:
            return {"success": False, "error": "No running processes found", "aborted": [], "errors": [], "total": 0}

    aborted: list[dict[str, str]] = []
    errors: list[dict[str, str]] = []
    for run in targets:
        try:
            engine.abort(run.run_id, timeout=timeout)
        except Exception as e:
            errors.append({"run_id": run.run_id, "error": str(e)})
            logging_bridge.error({
                "component": "group_watch.run_control",
                "op": "abort",
                "run_id": run.run_id,
                "error": repr(e),
            })
            continue
        if not run.is_terminal:
            run.finish(RunStatus.ABORTED)
        registry.deregister(run)
        aborted.append({"run_id": run.run_id, "status": "aborted"})

    result: dict[str, Any] = {
        "success": bool(aborted),
        "aborted": aborted,
        "errors": errors,
        "total": len(aborted),
    }
    if not aborted:
        result["error"] = errors[0]["error"] if errors else "nothing aborted"
    return result


# =============================================================================
# CONTROLLER
# =============================================================================
@dataclass
class RunOutcome:
    run: ScrapeRun
    observed: RunStatus  # last status seen from the engine
    timed_out: bool = False
    aborted: bool = False
    poll_error: str | None = None
    waited_sec: float = 0.0


class RunController:
    def __init__(
        self,
        engine: ScrapeEngine,
        registry: RunRegistry,
        *,
        poll_interval_sec: float = 3.0,
        watchdog_sec: float = 60.0,
        abort_timeout_sec: float | None = None,
        primary_abort: Callable[..., dict[str, Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.registry = registry
        self.poll_interval_sec = poll_interval_sec
        self.watchdog_sec = watchdog_sec
        self.abort_timeout_sec = abort_timeout_sec
        self._primary_abort = primary_abort or (lambda rid, timeout=None: abort_runs(engine, registry, rid, timeout=timeout))
        self._clock = clock
        self._sleep = sleep

    def start(self, config: RunConfig) -> ScrapeRun:
        """Start a remote run. Engine errors propagate: a run that never started is fatal."""
        run_id = self.engine.start(config)
        run = ScrapeRun(run_id=run_id, started_at=now_iso(), source_urls=list(config.source_urls))
        self.registry.register(run)
        logging_bridge.activity({
            "component": "group_watch.run_control",
            "op": "started",
            "run_id": run_id,
            "sources": list(config.source_urls),
        })
        return run

    def await_completion(self, run: ScrapeRun) -> RunOutcome:
        """Poll until terminal or watchdog; abort on watchdog or poll failure. Never raises."""
        t0 = self._clock()
        observed = RunStatus.RUNNING
        poll_error: str | None = None

        while True:
            left = self.watchdog_sec - (self._clock() - t0)
            if left <= 0:
                break
            try:
                observed = self.engine.get_status(run.run_id, timeout=left)
            except Exception as e:
                poll_error = repr(e)
                logging_bridge.error({
                    "component": "group_watch.run_control",
                    "op": "poll",
                    "run_id": run.run_id,
                    "error": poll_error,
                })
                break
            if observed.terminal:
                break
            remaining = self.watchdog_sec - (self._clock() - t0)
            self._sleep(max(0.0, min(self.poll_interval_sec, remaining)))

        outcome = RunOutcome(run=run, observed=observed, poll_error=poll_error)
        if observed.terminal:
            if not run.is_terminal:
                run.finish(observed)
            self.registry.deregister(run)
        else:
            outcome.timed_out = poll_error is None or self._clock() - t0 >= self.watchdog_sec
            outcome.aborted = self._abort(run.run_id)
            if outcome.aborted:
                if not run.is_terminal:
                    run.finish(RunStatus.ABORTED)
                self.registry.deregister(run)

        outcome.waited_sec = self._clock() - t0
        logging_bridge.activity({
            "component": "group_watch.run_control",
            "op": "finished",
            "run_id": run.run_id,
            "status": run.status.value,
            "observed": observed.value,
            "timed_out": outcome.timed_out,
            "aborted": outcome.aborted,
            "waited_sec": round(outcome.waited_sec, 3),
        })
        return outcome

    def _abort(self, run_id: str) -> bool:
        budget = self.abort_timeout_sec
        deadline = None if budget is None else self._clock() + budget
        try:
            result = self._primary_abort(run_id, timeout=budget)
            if result and result.get("success"):
                return True
            logging_bridge.error({
                "component": "group_watch.run_control",
                "op": "abort_primary",
                "run_id": run_id,
                "error": (result or {}).get("error", "non-success"),
            })
        except Exception as e:
            logging_bridge.error({
                "component": "group_watch.run_control",
                "op": "abort_primary",
                "run_id": run_id,
                "error": repr(e),
            })

        left = None if deadline is None else deadline - self._clock()
        if left is not None and left <= 0:
            logging_bridge.error({
                "component": "group_watch.run_control",
                "op": "abort_direct",
                "run_id": run_id,
                "error": "abort budget spent by the primary attempt",
            })
            return False
        try:
            self.engine.abort(run_id, timeout=left)
            return True
        except Exception as e:
            logging_bridge.error({
                "component": "group_watch.run_control",
                "op": "abort_direct",
                "run_id": run_id,
                "error": repr(e),
            })
            return False
