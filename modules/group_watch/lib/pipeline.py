"""
One scrape invocation, end to end:

    start run -> await (watchdog) -> fetch results -> partition per source
      -> persist raw posts (insert-if-absent) -> structure in batches
         (external AI, local fallback per failed batch) -> resolve identity
      -> upsert structured jobs -> summary

Only two conditions are fatal: the run cannot be started, or the store cannot
be reached. Both surface as PipelineError with the elapsed time. Everything
else is counted in the summary and processing continues.
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Callable

from . import fallback, logging_bridge
from .collector import Partition, ResultCollector, partition
from .config import RunConfig
from .identity import IdentityResolver, UnresolvableIdentity
from .models import JobCandidate, JobExtraction, PipelineSummary, RawPost, SourceBreakdown, SourceGroup, StructuredJob
from .run_control import RunController
from .scrape_engine import EngineError
from .store import DocumentStore, DuplicateKeyError, StoreUnavailableError
from .structuring import Structurer, StructuringResult, parse_response
from .utils import elapsed_label, now_iso, sample

AI_METHOD = "external_ai"
FALLBACK_METHOD = "local_fallback"
AI_VERSION = "external_ai_v1"
FALLBACK_VERSION = "local_extractor_v1"


class PipelineError(RuntimeError):
    """Invocation-fatal failure. `elapsed_sec` is the time spent before giving up."""

    def __init__(self, message: str, *, elapsed_sec: float):
        super().__init__(message)
        self.elapsed_sec = elapsed_sec


def _us_since(t0: int) -> int:
    return int((time.perf_counter_ns() - t0) // 1000)


class Coordinator:
    def __init__(
        self,
        *,
        controller: RunController,
        collector: ResultCollector,
        store: DocumentStore,
        structurer: Structurer,
        source_label: str = "facebook_auto_scraping",
        batch_size: int = 10,
        batch_delay_sec: float = 1.0,
        process_partial_results: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller = controller
        self.collector = collector
        self.store = store
        self.structurer = structurer
        self.source_label = source_label
        self.batch_size = max(1, batch_size)
        self.batch_delay_sec = batch_delay_sec
        self.process_partial_results = process_partial_results
        self._sleep = sleep
        # AI output must carry a natural URL; local extraction may invent one.
        self._ai_identity = IdentityResolver(allow_generated=False)
        self._fallback_identity = IdentityResolver(allow_generated=True)

    # =========================================================================
    # ORCHESTRATION
    # =========================================================================
    def orchestrate(self, config: RunConfig) -> PipelineSummary:
        start_ns = time.perf_counter_ns()
        durations_us: dict[str, int] = {}

        t0 = time.perf_counter_ns()
        try:
            run = self.controller.start(config)
        except EngineError as e:
            elapsed = (time.perf_counter_ns() - start_ns) / 1e9
            logging_bridge.error({
                "component": "group_watch.pipeline",
                "op": "start_failed",
                "sources": list(config.source_urls),
                "error": repr(e),
                "elapsed_sec": round(elapsed, 3),
            })
            raise PipelineError(f"Failed to start scrape run: {e}", elapsed_sec=elapsed) from e
        durations_us["start"] = _us_since(t0)

        t0 = time.perf_counter_ns()
        outcome = self.controller.await_completion(run)
        durations_us["await"] = _us_since(t0)

        t0 = time.perf_counter_ns()
        try:
            posts = self.collector.fetch(run.run_id)
        except EngineError as e:
            logging_bridge.error({
                "component": "group_watch.pipeline",
                "op": "fetch_failed",
                "run_id": run.run_id,
                "error": repr(e),
            })
            posts = []
        parts = partition(posts, config.source_urls)
        durations_us["collect"] = _us_since(t0)

        t0 = time.perf_counter_ns()
        per_source = self._persist_raw(parts)
        self._touch_sources(per_source)
        durations_us["persist_raw"] = _us_since(t0)

        summary = PipelineSummary(
            run_id=run.run_id,
            status=run.status.value,
            aborted=outcome.aborted,
            timed_out=outcome.timed_out,
            total_posts=parts.total,
            saved=sum(b.saved for b in per_source),
            duplicates=sum(b.duplicates for b in per_source),
            failed=sum(b.failed for b in per_source),
            per_source=per_source,
        )

        finished = outcome.observed.terminal
        if posts and (finished or self.process_partial_results):
            t0 = time.perf_counter_ns()
            summary.job_extraction = self._structure(posts)
            durations_us["structure"] = _us_since(t0)
        elif posts:
            summary.partial_processed = False
            logging_bridge.activity({
                "component": "group_watch.pipeline",
                "op": "partial_skipped",
                "run_id": run.run_id,
                "posts": len(posts),
            })

        summary.execution_time = elapsed_label(start_ns, time.perf_counter_ns())
        logging_bridge.activity({
            "component": "group_watch.pipeline",
            "op": "summary",
            "run_id": run.run_id,
            "status": summary.status,
            "timed_out": summary.timed_out,
            "aborted": summary.aborted,
            "total_posts": summary.total_posts,
            "saved": summary.saved,
            "duplicates": summary.duplicates,
            "method": summary.job_extraction.method,
            "jobs_saved": summary.job_extraction.saved_count,
            "durations_us": durations_us,
            "total_us": _us_since(start_ns),
        })
        return summary

    # =========================================================================
    # RAW POSTS
    # =========================================================================
    def _persist_raw(self, parts: Partition) -> list[SourceBreakdown]:
        out: list[SourceBreakdown] = []
        for url, posts in parts.by_source.items():
            row = SourceBreakdown(source_url=url, found=len(posts))
            name = self._source_name(url)
            for post in posts:
                try:
                    if self.store.insert_if_absent("raw_posts", post.to_doc(source_name=name)):
                        row.saved += 1
                    else:
                        row.duplicates += 1
                except (sqlite3.Error, ValueError) as e:
                    row.failed += 1
                    logging_bridge.error({
                        "component": "group_watch.pipeline",
                        "op": "raw_persist",
                        "source_url": url,
                        "error": repr(e),
                    })
            out.append(row)
        return out

    def _source_name(self, url: str) -> str:
        try:
            doc = self.store.find_one("sources", url)
        except sqlite3.Error:
            return ""
        return str(doc.get("name") or "") if doc else ""

    def _touch_sources(self, per_source: list[SourceBreakdown]) -> None:
        """Stamp last_scraped and bump the running post count for each requested source."""
        at = now_iso()
        for row in per_source:
            try:
                doc = self.store.find_one("sources", row.source_url)
                group = SourceGroup.from_doc(doc) if doc else SourceGroup(url=row.source_url)
                group.last_scraped = at
                group.total_posts_scraped += row.saved
                self.store.upsert("sources", group.to_doc())
            except (sqlite3.Error, DuplicateKeyError) as e:
                logging_bridge.error({
                    "component": "group_watch.pipeline",
                    "op": "touch_source",
                    "source_url": row.source_url,
                    "error": repr(e),
                })

    # =========================================================================
    # STRUCTURING
    # =========================================================================
    def _structure(self, posts: list[RawPost]) -> JobExtraction:
        ext = JobExtraction()
        methods: set[str] = set()
        fallback_batches = fallback_found = 0
        batches = [posts[i : i + self.batch_size] for i in range(0, len(posts), self.batch_size)]

        for i, batch in enumerate(batches):
            if i and self.batch_delay_sec > 0:
                self._sleep(self.batch_delay_sec)

            result = self._call_structurer(batch)
            if result.success:
                methods.add(AI_METHOD)
                candidates = parse_response(result.data)
                resolver, method, version = self._ai_identity, AI_METHOD, AI_VERSION
            else:
                methods.add(FALLBACK_METHOD)
                ext.error = result.error
                logging_bridge.activity({
                    "component": "group_watch.pipeline",
                    "op": "fallback",
                    "batch": i,
                    "posts": len(batch),
                    "reason": result.error,
                })
                candidates = self._fallback_candidates(batch, ext)
                fallback_batches += 1
                fallback_found += len(candidates)
                resolver, method, version = self._fallback_identity, FALLBACK_METHOD, FALLBACK_VERSION

            ext.structured_count += len(candidates)
            for candidate in candidates:
                self._save_job(candidate, resolver, f"{self.source_label}_{method}", version, ext)

        if methods:
            ext.method = methods.pop() if len(methods) == 1 else "mixed"
        # the AI failed and the local extractor recovered nothing from those posts
        if fallback_batches and not fallback_found:
            ext.success = False
        ext.saved_count = ext.inserted + ext.updated
        return ext

    def _call_structurer(self, batch: list[RawPost]) -> StructuringResult:
        payload = json.dumps([p.raw or p.to_doc() for p in batch], ensure_ascii=False, default=str)
        try:
            return self.structurer.filter_and_structure(payload)
        except Exception as e:
            logging_bridge.error({
                "component": "group_watch.pipeline",
                "op": "structurer_raised",
                "error": repr(e),
            })
            return StructuringResult(success=False, error=str(e))

    def _fallback_candidates(self, batch: list[RawPost], ext: JobExtraction) -> list[JobCandidate]:
        out: list[JobCandidate] = []
        for post in batch:
            try:
                if fallback.looks_like_job_post(fallback.plain_text(post.content)):
                    out.append(fallback.extract(post))
            except Exception as e:
                ext.failed += 1
                logging_bridge.error({
                    "component": "group_watch.pipeline",
                    "op": "fallback_extract",
                    "error": repr(e),
                    "sample": sample(post.content),
                })
        return out

    def _save_job(
        self,
        candidate: JobCandidate,
        resolver: IdentityResolver,
        source: str,
        version: str,
        ext: JobExtraction,
    ) -> None:
        try:
            identity = resolver.resolve(candidate)
        except UnresolvableIdentity:
            ext.skipped += 1
            return

        job = to_structured_job(candidate, identity, source=source, processing_version=version)
        try:
            outcome = self.store.upsert("jobs", job.to_doc())
        except DuplicateKeyError as e:
            ext.skipped += 1
            logging_bridge.activity({
                "component": "group_watch.pipeline",
                "op": "duplicate_skipped",
                "post_url": identity,
                "warning": str(e),
            })
            return
        except (sqlite3.Error, ValueError) as e:
            ext.failed += 1
            logging_bridge.error({
                "component": "group_watch.pipeline",
                "op": "job_upsert",
                "post_url": identity,
                "error": repr(e),
            })
            return

        if outcome == "inserted":
            ext.inserted += 1
        else:
            ext.updated += 1


def to_structured_job(candidate: JobCandidate, identity: str, *, source: str, processing_version: str) -> StructuredJob:
    """Converge either structuring path on one record shape; required text fields get placeholders."""
    now = now_iso()
    return StructuredJob(
        post_url=identity,
        title=candidate.title or fallback.DEFAULT_TITLE,
        company=candidate.company or fallback.NOT_SPECIFIED,
        location=candidate.location or fallback.NOT_SPECIFIED,
        source=source,
        extracted_at=now,
        processing_version=processing_version,
        salary=candidate.salary,
        deadline=candidate.deadline,
        requirements=list(candidate.requirements),
        scraped_at=now,
        source_url=candidate.source_url,
        author_name=candidate.author_name,
        employment_type=candidate.employment_type,
        summary=candidate.summary,
        how_to_apply=candidate.how_to_apply,
        content=candidate.content,
        engagement={"likes": candidate.likes, "comments": candidate.comments},
    )


def open_store(sqlite_path: str, *, started_ns: int | None = None) -> DocumentStore:
    """Open the store, turning unavailability into the invocation-fatal PipelineError."""
    t0 = started_ns or time.perf_counter_ns()
    try:
        return DocumentStore(sqlite_path)
    except StoreUnavailableError as e:
        raise PipelineError(str(e), elapsed_sec=(time.perf_counter_ns() - t0) / 1e9) from e
