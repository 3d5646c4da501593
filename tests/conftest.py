# tests/conftest.py
import json
import os
import types

import pytest
from freezegun import freeze_time

from modules.group_watch.lib.models import RunStatus
from modules.group_watch.lib.run_control import MemoryRunRegistry
from modules.group_watch.lib.scrape_engine import EngineError
from modules.group_watch.lib.store import DocumentStore
from modules.group_watch.lib.structuring import StructuringResult

GROUP_A = "https://www.facebook.com/groups/devjobs"
GROUP_B = "https://www.facebook.com/groups/remotework"


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (network calls or external services).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "live: marks tests that perform live network calls or hit external services (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch, tmp_path):
    # Logs and the default document store live in the per-test tmp dir
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.setenv("GROUP_WATCH_DB", str(tmp_path / "group_watch.db"))
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("APIFY_API_TOKEN", raising=False)
    monkeypatch.delenv("EXTERNAL_JOB_FILTER_API_URL", raising=False)
    monkeypatch.delenv("CRON_SECRET_KEY", raising=False)
    yield


@pytest.fixture(autouse=True)
def no_email_env(monkeypatch):
    monkeypatch.setenv("SEND_EMAIL", "0")
    monkeypatch.setenv("SCHEDULED_MODULES_DRY_RUN", "1")
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


@pytest.fixture
def write_min_config(tmp_path, monkeypatch):
    cfg = {
        "jobs": [
            {
                "id": "gw-auto-never",
                "name": "Group watch (test)",
                "module": "modules.group_watch",
                "trigger": {"date": "2099-01-01T00:00:00Z"},
                "kwargs": {"action": "auto", "cron_key_env": "CRON_SECRET_KEY"},
                "send_email": False,
                "summary": "pytest config",
            }
        ]
    }
    p = tmp_path / "config.json"
    p.write_text(json.dumps(cfg), encoding="utf-8")
    monkeypatch.setenv("CONFIG_PATH", str(p))
    return p


@pytest.fixture
def stub_emailer(monkeypatch):
    sent = {"messages": []}

    def send_html(**kwargs):
        sent["messages"].append(kwargs)
        return "<fake-message-id@example>"

    ns = types.SimpleNamespace(send_html=send_html, sent=sent)
    monkeypatch.setattr("service.emailer.send_html", ns.send_html, raising=True)
    monkeypatch.setattr("service.runner.send_html", ns.send_html, raising=False)
    return ns


def read_log(tmp_path, prefix: str) -> list[dict]:
    """Every record written to $LOG_DIR/{prefix}-*.jsonl during the test."""
    out = []
    for p in sorted((tmp_path / "logs").glob(f"{prefix}-*.jsonl")):
        out.extend(json.loads(line) for line in p.read_text(encoding="utf-8").splitlines() if line.strip())
    return out


# ---------------------------------------------------------------------
# Group-watch fakes
# ---------------------------------------------------------------------
def engine_item(group_url: str, post_id: str, text: str, author_id: str = "u1", **extra) -> dict:
    """An engine dataset item shaped like the groups scraper output."""
    item = {
        "facebookUrl": group_url,
        "url": f"{group_url}/posts/{post_id}",
        "text": text,
        "user": {"id": author_id, "name": f"User {author_id}"},
        "attachments": [],
        "likesCount": 1,
        "commentsCount": 0,
    }
    item.update(extra)
    return item


class FakeEngine:
    """
    Scripted scrape engine. `statuses` is consumed one per poll (the last
    entry repeats); entries may be exceptions to raise instead.
    """

    def __init__(self, statuses=None, results=None, *, start_error=None, abort_error=None, results_error=None):
        self.statuses = list(statuses or [RunStatus.SUCCEEDED])
        self.results = list(results or [])
        self.start_error = start_error
        self.abort_error = abort_error
        self.results_error = results_error
        self.started = []
        self.polls = 0
        self.result_calls = []
        self.aborted = []
        self.status_timeouts = []
        self.abort_timeouts = []

    def start(self, config):
        if self.start_error:
            raise self.start_error
        self.started.append(config)
        return f"run-{len(self.started)}"

    def get_status(self, run_id, timeout=None):
        self.status_timeouts.append(timeout)
        status = self.statuses[min(self.polls, len(self.statuses) - 1)]
        self.polls += 1
        if isinstance(status, Exception):
            raise status
        return status

    def get_results(self, run_id):
        self.result_calls.append(run_id)
        if self.results_error:
            raise self.results_error
        return list(self.results)

    def abort(self, run_id, timeout=None):
        self.abort_timeouts.append(timeout)
        if self.abort_error:
            raise self.abort_error
        self.aborted.append(run_id)


class FakeStructurer:
    """Returns `responses` in order (last one repeats); exceptions are raised."""

    def __init__(self, *responses):
        self.responses = list(responses) or [StructuringResult(success=True, data=[])]
        self.calls = []

    def filter_and_structure(self, posts_json):
        self.calls.append(json.loads(posts_json))
        resp = self.responses[min(len(self.calls) - 1, len(self.responses) - 1)]
        if isinstance(resp, Exception):
            raise resp
        return resp


class FakeSender:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def send_digest(self, address, items):
        if address in self.fail_for:
            raise ConnectionError(f"smtp down for {address}")
        self.sent.append((address, [j.post_url for j in items]))


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    return DocumentStore(str(tmp_path / "gw.db"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return MemoryRunRegistry()


@pytest.fixture
def engine_down():
    return EngineError("engine unreachable")
