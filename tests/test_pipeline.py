import pytest
from conftest import GROUP_A, GROUP_B, FakeEngine, FakeStructurer, engine_item, read_log

from modules.group_watch.lib.collector import ResultCollector
from modules.group_watch.lib.config import RunConfig
from modules.group_watch.lib.models import RawPost, RunStatus
from modules.group_watch.lib.pipeline import (
    AI_VERSION,
    FALLBACK_VERSION,
    Coordinator,
    PipelineError,
    to_structured_job,
)
from modules.group_watch.lib.run_control import RunController
from modules.group_watch.lib.scrape_engine import EngineError
from modules.group_watch.lib.structuring import StructuringResult

CONFIG = RunConfig(source_urls=(GROUP_A, GROUP_B))

JOB_1 = "We are hiring!\nPosition: Python Developer\nCompany: Acme\nLocation: Remote\nApply via email jobs@acme.test"
JOB_2 = "Hiring a Senior Engineer at Beta Corp. 3 years experience required. Send CV to hr@beta.test"
CHATTER = (
    "Lovely weather in the park today",
    "Who wants to grab lunch on Friday?",
    "Selling my old bicycle, message me",
)


def _coordinator(engine, store, registry, clock, structurer, **kw):
    controller = RunController(
        engine,
        registry,
        poll_interval_sec=3.0,
        watchdog_sec=60.0,
        primary_abort=kw.pop("primary_abort", None),
        clock=clock,
        sleep=clock.sleep,
    )
    return Coordinator(
        controller=controller,
        collector=ResultCollector(engine),
        store=store,
        structurer=structurer,
        source_label=kw.pop("source_label", "facebook_manual_scraping"),
        sleep=clock.sleep,
        **kw,
    )


def test_per_source_counts_with_existing_duplicate(store, registry, clock):
    a1 = engine_item(GROUP_A, "1", "first post in A")
    a2 = engine_item(GROUP_A, "2", "second post in A", author_id="u2")
    b1 = engine_item(GROUP_B, "3", "only post in B")
    store.insert_if_absent("raw_posts", RawPost.from_engine_item(a1, scraped_at="earlier").to_doc())
    structurer = FakeStructurer(StructuringResult(success=True, data=[]))

    summary = _coordinator(FakeEngine(results=[a1, a2, b1]), store, registry, clock, structurer).orchestrate(CONFIG)

    rows = {r.source_url: r for r in summary.per_source}
    assert (rows[GROUP_A].found, rows[GROUP_A].saved, rows[GROUP_A].duplicates) == (2, 1, 1)
    assert (rows[GROUP_B].found, rows[GROUP_B].saved, rows[GROUP_B].duplicates) == (1, 1, 0)
    assert (summary.total_posts, summary.saved, summary.duplicates) == (3, 2, 1)
    assert summary.status == "SUCCEEDED" and not summary.timed_out
    assert store.count("raw_posts") == 3

    # AI answered with zero jobs: that is a result, not a reason to fall back
    ext = summary.job_extraction
    assert (ext.success, ext.method, ext.structured_count, ext.saved_count) == (True, "external_ai", 0, 0)
    assert len(structurer.calls) == 1

    source_a = store.find_one("sources", GROUP_A)
    assert source_a["last_scraped"] and source_a["total_posts_scraped"] == 1
    assert summary.execution_time.endswith("s")


def test_structuring_failure_falls_back_to_local_extraction(store, registry, clock):
    texts = [JOB_1, CHATTER[0], JOB_2, CHATTER[1], CHATTER[2]]
    items = [engine_item(GROUP_A, str(i), t, author_id=f"u{i}") for i, t in enumerate(texts)]
    structurer = FakeStructurer(ConnectionError("AI service down"))

    summary = _coordinator(FakeEngine(results=items), store, registry, clock, structurer).orchestrate(CONFIG)

    ext = summary.job_extraction
    assert (ext.success, ext.method, ext.structured_count) == (True, "local_fallback", 2)
    assert (ext.inserted, ext.saved_count) == (2, 2)
    assert "AI service down" in ext.error

    jobs = store.find("jobs")
    assert {j["title"] for j in jobs} == {"Python Developer", "Hiring a Senior Engineer at Beta Corp. 3 years experience required. Send CV to hr@beta.test"}
    assert {j["source"] for j in jobs} == {"facebook_manual_scraping_local_fallback"}
    assert {j["processing_version"] for j in jobs} == {FALLBACK_VERSION}
    assert {j["post_url"] for j in jobs} == {f"{GROUP_A}/posts/0", f"{GROUP_A}/posts/2"}


def test_failed_structuring_with_nothing_recovered_reports_failure(store, registry, clock):
    items = [engine_item(GROUP_A, str(i), t, author_id=f"u{i}") for i, t in enumerate(CHATTER)]
    structurer = FakeStructurer(ConnectionError("AI down"))

    summary = _coordinator(FakeEngine(results=items), store, registry, clock, structurer).orchestrate(CONFIG)

    ext = summary.job_extraction
    assert (ext.success, ext.method, ext.structured_count, ext.saved_count) == (False, "local_fallback", 0, 0)
    assert ext.error == "AI down"
    assert summary.total_posts == 3 and store.count("jobs") == 0


def test_ai_record_without_identity_is_skipped_and_logged(store, registry, clock, tmp_path):
    structurer = FakeStructurer(
        StructuringResult(
            success=True,
            data=[
                {"jobTitle": "Ghost Role", "company": "Nowhere"},
                {"jobTitle": "Real Role", "postUrl": "https://www.facebook.com/groups/devjobs/posts/9"},
            ],
        )
    )
    engine = FakeEngine(results=[engine_item(GROUP_A, "1", JOB_1)])

    summary = _coordinator(engine, store, registry, clock, structurer, source_label="facebook_auto_scraping").orchestrate(CONFIG)

    ext = summary.job_extraction
    assert (ext.structured_count, ext.skipped, ext.inserted) == (2, 1, 1)
    [job] = store.find("jobs")
    assert job["title"] == "Real Role"
    assert job["source"] == "facebook_auto_scraping_external_ai"
    assert job["processing_version"] == AI_VERSION
    assert job["location"] == "Not specified"

    unresolvable = [e for e in read_log(tmp_path, "error-test") if e.get("op") == "unresolvable"]
    assert len(unresolvable) == 1 and "Ghost Role" in unresolvable[0]["sample"]


def test_rerun_updates_instead_of_duplicating(store, registry, clock):
    data = [{"jobTitle": "Role", "postUrl": "https://www.facebook.com/groups/devjobs/posts/9"}]
    engine = FakeEngine(results=[engine_item(GROUP_A, "1", JOB_1)])

    first = _coordinator(engine, store, registry, clock, FakeStructurer(StructuringResult(True, data))).orchestrate(CONFIG)
    second = _coordinator(engine, store, registry, clock, FakeStructurer(StructuringResult(True, data))).orchestrate(CONFIG)

    assert (first.job_extraction.inserted, first.job_extraction.updated) == (1, 0)
    assert (second.job_extraction.inserted, second.job_extraction.updated) == (0, 1)
    assert second.duplicates == 1
    assert store.count("jobs") == 1


def test_batches_are_paced_and_methods_can_mix(store, registry, clock):
    items = [engine_item(GROUP_A, str(i), JOB_2, author_id=f"u{i}") for i in range(12)]
    structurer = FakeStructurer(StructuringResult(success=True, data=[]), StructuringResult(success=False, error="503"))

    summary = _coordinator(FakeEngine(results=items), store, registry, clock, structurer, batch_size=10, batch_delay_sec=1.0).orchestrate(CONFIG)

    assert [len(c) for c in structurer.calls] == [10, 2]
    assert 1.0 in clock.sleeps
    assert summary.job_extraction.method == "mixed"
    assert summary.job_extraction.inserted == 2


def test_watchdog_abort_still_collects_and_processes(store, registry, clock):
    engine = FakeEngine(statuses=[RunStatus.RUNNING], results=[engine_item(GROUP_A, "1", JOB_1)])
    structurer = FakeStructurer(StructuringResult(success=True, data=[]))

    def primary(run_id, timeout=None):
        return {"success": False, "error": "not found"}

    summary = _coordinator(engine, store, registry, clock, structurer, primary_abort=primary).orchestrate(CONFIG)

    assert engine.aborted == ["run-1"]
    assert engine.result_calls == ["run-1"]
    assert summary.timed_out and summary.aborted and summary.status == "ABORTED"
    assert summary.total_posts == 1 and summary.partial_processed
    assert len(structurer.calls) == 1


def test_partial_results_policy_can_skip_structuring(store, registry, clock):
    engine = FakeEngine(statuses=[RunStatus.RUNNING], results=[engine_item(GROUP_A, "1", JOB_1)])
    structurer = FakeStructurer()

    summary = _coordinator(engine, store, registry, clock, structurer, process_partial_results=False).orchestrate(CONFIG)

    assert summary.saved == 1
    assert not summary.partial_processed
    assert structurer.calls == []
    assert summary.job_extraction.method is None


def test_results_fetch_failure_yields_empty_summary(store, registry, clock, engine_down):
    engine = FakeEngine(results_error=engine_down)
    summary = _coordinator(engine, store, registry, clock, FakeStructurer()).orchestrate(CONFIG)
    assert summary.total_posts == 0
    assert [r.found for r in summary.per_source] == [0, 0]


def test_start_failure_is_fatal(store, registry, clock):
    engine = FakeEngine(start_error=EngineError("401 Unauthorized"))
    with pytest.raises(PipelineError) as ei:
        _coordinator(engine, store, registry, clock, FakeStructurer()).orchestrate(CONFIG)
    assert "401" in str(ei.value)
    assert ei.value.elapsed_sec >= 0
    assert store.count("runs") == 0 and registry.running() == []


def test_to_structured_job_applies_placeholders():
    from modules.group_watch.lib.models import JobCandidate

    job = to_structured_job(JobCandidate(likes=3), "https://fb.test/p/1", source="s", processing_version="v")
    assert (job.title, job.company, job.location) == ("Job Opportunity", "Not specified", "Not specified")
    assert job.engagement == {"likes": 3, "comments": 0}
