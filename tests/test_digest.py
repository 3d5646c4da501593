import sqlite3

from conftest import FakeSender, read_log

from modules.group_watch.lib import render
from modules.group_watch.lib.digest import DigestEngine
from modules.group_watch.lib.mailer import SmtpDigestSender
from modules.group_watch.lib.models import StructuredJob, Subscriber


def _job(key: str, minute: int, **kw) -> StructuredJob:
    fields = {
        "post_url": f"https://www.facebook.com/groups/devjobs/posts/{key}",
        "title": f"Role {key}",
        "company": "Acme",
        "location": "Remote",
        "source": "facebook_auto_scraping_external_ai",
        "extracted_at": "2025-01-01T00:00:00Z",
        "processing_version": "external_ai_v1",
        "scraped_at": f"2025-01-01T00:{minute:02d}:00Z",
    }
    fields.update(kw)
    return StructuredJob(**fields)


def _seed_pool(store, keys="ABCDEF"):
    for minute, key in enumerate(keys):
        store.upsert("jobs", _job(key, minute).to_doc())
    return {k: f"https://www.facebook.com/groups/devjobs/posts/{k}" for k in keys}


def test_digest_sends_newest_unsent_and_appends_ids(store):
    url = _seed_pool(store)
    store.upsert("subscribers", Subscriber(email="dev@example.com", sent_job_ids=[url["A"], url["B"]]).to_doc())
    sender = FakeSender()

    report = DigestEngine(store, sender, limit=4, clock=lambda: "2025-01-02T00:00:00Z").run()

    assert report.to_dict() == {"subscribers": 1, "sent": 1, "skipped": 0, "failed": 0, "jobs_sent": 4}
    assert sender.sent == [("dev@example.com", [url["F"], url["E"], url["D"], url["C"]])]
    sub = Subscriber.from_doc(store.find_one("subscribers", "dev@example.com"))
    assert sub.sent_job_ids == [url["A"], url["B"], url["F"], url["E"], url["D"], url["C"]]
    assert sub.last_sent_at == "2025-01-02T00:00:00Z"


def test_nothing_pending_means_no_send_and_no_state_change(store):
    url = _seed_pool(store, "AB")
    before = Subscriber(email="dev@example.com", sent_job_ids=[url["B"], url["A"]], last_sent_at="old").to_doc()
    store.upsert("subscribers", before)
    sender = FakeSender()

    report = DigestEngine(store, sender).run()

    assert (report.sent, report.skipped) == (0, 1)
    assert sender.sent == []
    assert store.find_one("subscribers", "dev@example.com") == before


def test_failed_send_leaves_subscriber_untouched_and_others_proceed(store):
    _seed_pool(store, "AB")
    for email in ("down@example.com", "ok@example.com"):
        store.upsert("subscribers", Subscriber(email=email, created_at="2025-01-01").to_doc())
    sender = FakeSender(fail_for={"down@example.com"})

    report = DigestEngine(store, sender).run()

    assert (report.sent, report.failed, report.jobs_sent) == (1, 1, 2)
    assert store.find_one("subscribers", "down@example.com")["sent_job_ids"] == []
    assert len(store.find_one("subscribers", "ok@example.com")["sent_job_ids"]) == 2


def test_subscribe_is_idempotent_and_sends_welcome(store):
    url = _seed_pool(store, "ABC")
    sender = FakeSender()
    engine = DigestEngine(store, sender, limit=2)

    first = engine.subscribe("  New.Person@Example.COM ")
    again = engine.subscribe("new.person@example.com")

    assert first == {"success": True, "created": True, "welcome_sent": True, "email": "new.person@example.com", "jobs_sent": 2}
    assert again["created"] is False and again["welcome_sent"] is False
    assert sender.sent == [("new.person@example.com", [url["C"], url["B"]])]
    assert store.count("subscribers") == 1


def test_subscribe_survives_welcome_failure(store):
    _seed_pool(store, "A")
    result = DigestEngine(store, FakeSender(fail_for={"x@example.com"})).subscribe("x@example.com")
    assert result["created"] and not result["welcome_sent"]
    assert store.find_one("subscribers", "x@example.com")["sent_job_ids"] == []


def test_repeated_runs_never_resend_a_job(store):
    url = _seed_pool(store, "ABC")
    store.upsert("subscribers", Subscriber(email="dev@example.com").to_doc())
    sender = FakeSender()
    engine = DigestEngine(store, sender, limit=2)
    history = []

    engine.run()
    history.append(store.find_one("subscribers", "dev@example.com")["sent_job_ids"])

    # new jobs arrive and an already-sent one is scraped again with a newer timestamp
    store.upsert("jobs", _job("D", 30).to_doc())
    store.upsert("jobs", _job("C", 31).to_doc())
    engine.run()
    history.append(store.find_one("subscribers", "dev@example.com")["sent_job_ids"])

    store.upsert("jobs", _job("E", 40).to_doc())
    store.upsert("jobs", _job("B", 41).to_doc())
    engine.run()
    engine.run()
    history.append(store.find_one("subscribers", "dev@example.com")["sent_job_ids"])

    mailed = [u for _, urls in sender.sent for u in urls]
    assert len(mailed) == len(set(mailed)) == 5
    assert set(mailed) == set(url.values()) | {_job("D", 0).post_url, _job("E", 0).post_url}
    final = history[-1]
    assert len(final) == len(set(final)) and final == mailed
    for earlier, later in zip(history, history[1:]):
        assert later[: len(earlier)] == earlier


def test_mailed_but_unrecorded_digest_is_logged_distinctly(store, monkeypatch, tmp_path):
    _seed_pool(store, "AB")
    store.upsert("subscribers", Subscriber(email="dev@example.com").to_doc())
    sender = FakeSender()
    real_upsert = store.upsert

    def upsert(collection, doc):
        if collection == "subscribers":
            raise sqlite3.OperationalError("database is locked")
        return real_upsert(collection, doc)

    monkeypatch.setattr(store, "upsert", upsert)
    report = DigestEngine(store, sender).run()

    assert (report.sent, report.failed) == (0, 1)
    assert len(sender.sent) == 1
    [logged] = [e for e in read_log(tmp_path, "error-test") if e.get("component") == "group_watch.digest"]
    assert logged["op"] == "deliver_unrecorded" and logged["mailed"] is True
    assert len(logged["job_ids"]) == 2


def test_digest_html_lists_jobs_and_escapes():
    jobs = [
        _job("1", 0, title="C# <Dev>", company="A&B", location="Lagos"),
        _job("2", 1, post_url="generated:u1:abc:1:ff", source_url="https://www.facebook.com/groups/devjobs"),
    ]
    html = render.digest_html(jobs)
    assert html.count("<li>") == 2 and "<ol>" in html
    assert "<strong>C# &lt;Dev&gt; at A&amp;B - Lagos</strong>" in html
    assert 'href="https://www.facebook.com/groups/devjobs"' in html
    assert "generated:" not in html
    assert render.digest_subject(jobs) == "Your job updates (2 new)"


def test_smtp_sender_uses_rendered_digest():
    captured = []
    SmtpDigestSender(send_html=lambda **kw: captured.append(kw)).send_digest("a@example.com", [_job("1", 0)])
    [msg] = captured
    assert msg["to"] == ["a@example.com"]
    assert msg["subject"] == "Your job updates (1 new)"
    assert "Role 1" in msg["html"]
