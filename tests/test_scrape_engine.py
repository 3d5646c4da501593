import pytest
import requests

from modules.group_watch.lib.config import RunConfig
from modules.group_watch.lib.models import RunStatus
from modules.group_watch.lib.scrape_engine import ApifyEngine, EngineError, map_status

ACTOR = "https://api.test/v2/acts/apify~facebook-groups-scraper"


class _Http:
    """Records calls; replies are looked up by URL, exceptions are raised."""

    def __init__(self, replies):
        self.replies = replies
        self.calls = []

    def _reply(self, method, url, **kw):
        self.calls.append((method, url, kw))
        reply = self.replies.get(url)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def get_json(self, url, **kw):
        return self._reply("GET", url, **kw)

    def post_json(self, url, **kw):
        return self._reply("POST", url, **kw)


def _engine(replies):
    http = _Http(replies)
    engine = ApifyEngine("tok", base_url="https://api.test/v2/", http=http, control_http=http, abort_timeout=5.0)
    return engine, http


@pytest.mark.parametrize(
    ("raw", "status"),
    [
        ("SUCCEEDED", RunStatus.SUCCEEDED),
        ("failed", RunStatus.FAILED),
        ("TIMED-OUT", RunStatus.FAILED),
        ("ABORTED", RunStatus.ABORTED),
        ("READY", RunStatus.RUNNING),
        ("ABORTING", RunStatus.RUNNING),
        (None, RunStatus.RUNNING),
    ],
)
def test_map_status(raw, status):
    assert map_status(raw) is status


def test_token_is_required():
    with pytest.raises(EngineError, match="token"):
        ApifyEngine("")


def test_start_posts_engine_input_and_returns_run_id():
    engine, http = _engine({f"{ACTOR}/runs": {"data": {"id": "abc123"}}})
    cfg = RunConfig(source_urls=("https://www.facebook.com/groups/a",), max_posts=30, max_photos=3)

    assert engine.start(cfg) == "abc123"

    [(method, _, kw)] = http.calls
    assert method == "POST" and kw["params"] == {"token": "tok"}
    assert kw["payload"] == {
        "startUrls": [{"url": "https://www.facebook.com/groups/a"}],
        "maxPosts": 30,
        "maxComments": 0,
        "scrapeComments": False,
        "scrapePhotos": True,
        "maxPhotos": 3,
    }


def test_start_without_run_id_is_an_engine_error():
    engine, _ = _engine({f"{ACTOR}/runs": {"data": {}}})
    with pytest.raises(EngineError, match="run id"):
        engine.start(RunConfig(source_urls=("https://www.facebook.com/groups/a",)))


def test_status_results_and_abort():
    engine, http = _engine({
        f"{ACTOR}/runs/r1": {"data": {"status": "RUNNING"}},
        f"{ACTOR}/runs/r1/dataset/items": [{"text": "hi"}],
        f"{ACTOR}/runs/r1/abort": None,
    })
    assert engine.get_status("r1") is RunStatus.RUNNING
    assert engine.get_results("r1") == [{"text": "hi"}]
    engine.abort("r1")
    assert http.calls[-1][2]["timeout"] == 5.0


def test_transport_errors_become_engine_errors():
    engine, _ = _engine({
        f"{ACTOR}/runs/r1": requests.ConnectionError("reset"),
        f"{ACTOR}/runs/r1/dataset/items": ValueError("JSON decode failed"),
        f"{ACTOR}/runs/r1/abort": requests.HTTPError("404"),
    })
    for call in (engine.get_status, engine.get_results, engine.abort):
        with pytest.raises(EngineError):
            call("r1")


def test_status_and_abort_use_the_control_client_with_caller_timeouts():
    replies = {
        f"{ACTOR}/runs/r1": {"data": {"status": "SUCCEEDED"}},
        f"{ACTOR}/runs/r1/dataset/items": [],
        f"{ACTOR}/runs/r1/abort": None,
    }
    http, control = _Http(replies), _Http(replies)
    engine = ApifyEngine("tok", base_url="https://api.test/v2/", http=http, control_http=control, abort_timeout=5.0)

    assert engine.get_status("r1", timeout=1.5) is RunStatus.SUCCEEDED
    engine.abort("r1", timeout=0.25)
    engine.get_results("r1")

    assert [(m, kw["timeout"]) for m, _, kw in control.calls] == [("GET", 1.5), ("POST", 0.25)]
    assert [m for m, _, _ in http.calls] == ["GET"]
