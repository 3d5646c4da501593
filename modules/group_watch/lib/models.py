from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .utils import md5_hex, now_iso


# -----------------------------
# Remote run lifecycle
# -----------------------------
class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass
class ScrapeRun:
    """
    One remote scraping job instance.
    Status only moves RUNNING -> SUCCEEDED | FAILED | ABORTED, and stays there.
    """

    run_id: str
    started_at: str
    status: RunStatus = RunStatus.RUNNING
    finished_at: str | None = None
    source_urls: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def finish(self, status: RunStatus, at: str | None = None) -> None:
        if self.is_terminal:
            raise ValueError(f"run {self.run_id} is already {self.status.value}")
        if not status.terminal:
            raise ValueError("finish() requires a terminal status")
        self.status = status
        self.finished_at = at or now_iso()

    def to_doc(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "source_urls": list(self.source_urls),
        }

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> ScrapeRun:
        return cls(
            run_id=str(doc["run_id"]),
            started_at=str(doc.get("started_at") or ""),
            status=RunStatus(doc.get("status") or "RUNNING"),
            finished_at=doc.get("finished_at"),
            source_urls=list(doc.get("source_urls") or []),
        )


# -----------------------------
# Raw scraped posts
# -----------------------------
@dataclass(frozen=True)
class Author:
    id: str = ""
    name: str = ""


@dataclass(frozen=True)
class Attachment:
    url: str | None = None
    id: str | None = None
    thumbnail: str | None = None
    ocr_text: str | None = None
    kind: str | None = None  # engine's __typename, e.g. "Photo"


@dataclass
class RawPost:
    """
    A single post as returned by the scrape engine. Lives for one run only;
    `raw` keeps the engine payload so it can be forwarded to structuring as-is.
    """

    source_url: str
    author: Author
    content: str
    attachments: list[Attachment] = field(default_factory=list)
    engagement: dict[str, int] = field(default_factory=dict)
    scraped_at: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_engine_item(cls, item: dict[str, Any], *, scraped_at: str) -> RawPost:
        if not isinstance(item, dict):
            raise ValueError(f"engine item must be an object, got {type(item).__name__}")
        user = item.get("user") if isinstance(item.get("user"), dict) else {}
        atts: list[Attachment] = []
        for a in item.get("attachments") or []:
            if not isinstance(a, dict):
                continue
            atts.append(
                Attachment(
                    url=a.get("url") or None,
                    id=a.get("id") or None,
                    thumbnail=a.get("thumbnail") or None,
                    ocr_text=a.get("ocrText") or None,
                    kind=a.get("__typename") or None,
                )
            )
        return cls(
            source_url=str(item.get("facebookUrl") or item.get("url") or ""),
            author=Author(id=str(user.get("id") or ""), name=str(user.get("name") or "")),
            content=str(item.get("text") or item.get("content") or ""),
            attachments=atts,
            engagement={
                "likes": int(item.get("likesCount") or 0),
                "comments": int(item.get("commentsCount") or 0),
                "shares": 0,
            },
            scraped_at=scraped_at,
            raw=dict(item),
        )

    def natural_key(self) -> str:
        """Stable key for raw-post dedupe: md5 of source, author id and text."""
        return md5_hex(f"{self.source_url}_{self.author.id}_{self.content}")

    def to_doc(self, *, source_name: str = "") -> dict[str, Any]:
        return {
            "post_key": self.natural_key(),
            "source_url": self.source_url,
            "source_name": source_name,
            "author": asdict(self.author),
            "content": self.content,
            "attachments": [asdict(a) for a in self.attachments],
            "engagement": dict(self.engagement),
            "scraped_at": self.scraped_at,
        }


# -----------------------------
# Structuring
# -----------------------------
@dataclass
class JobCandidate:
    """
    Loosely-typed job as produced by the structuring service or the local
    extractor. Every field is optional; the parser fills what it finds.
    """

    post_url: str | None = None
    attachment_urls: list[str] = field(default_factory=list)
    source_url: str | None = None
    author_id: str | None = None
    author_name: str | None = None
    title: str | None = None
    company: str | None = None
    location: str | None = None
    salary: str | None = None
    deadline: str | None = None
    requirements: list[str] = field(default_factory=list)
    employment_type: str | None = None
    summary: str | None = None
    how_to_apply: str | None = None
    content: str | None = None
    likes: int = 0
    comments: int = 0


@dataclass
class StructuredJob:
    """Persisted job record, upserted by post_url."""

    post_url: str
    title: str
    company: str
    location: str
    source: str
    extracted_at: str
    processing_version: str
    salary: str | None = None
    deadline: str | None = None
    requirements: list[str] = field(default_factory=list)
    scraped_at: str = ""
    source_url: str | None = None
    author_name: str | None = None
    employment_type: str | None = None
    summary: str | None = None
    how_to_apply: str | None = None
    content: str | None = None
    engagement: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not (self.post_url or "").strip():
            raise ValueError("StructuredJob.post_url cannot be empty")

    def to_doc(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> StructuredJob:
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in doc.items() if k in known})


# -----------------------------
# Subscribers & sources
# -----------------------------
@dataclass
class Subscriber:
    """
    Digest recipient. sent_job_ids is append-only: entries are never removed,
    reordered or repeated.
    """

    email: str
    sent_job_ids: list[str] = field(default_factory=list)
    last_sent_at: str | None = None
    created_at: str = ""

    def unsent(self, job_ids: list[str]) -> list[str]:
        seen = set(self.sent_job_ids)
        return [j for j in job_ids if j not in seen]

    def record_sent(self, job_ids: list[str], at: str) -> None:
        seen = set(self.sent_job_ids)
        for j in job_ids:
            if j not in seen:
                self.sent_job_ids.append(j)
                seen.add(j)
        self.last_sent_at = at

    def to_doc(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Subscriber:
        return cls(
            email=str(doc["email"]),
            sent_job_ids=list(doc.get("sent_job_ids") or []),
            last_sent_at=doc.get("last_sent_at"),
            created_at=str(doc.get("created_at") or ""),
        )


@dataclass
class SourceGroup:
    url: str
    name: str = ""
    is_active: bool = True
    last_scraped: str | None = None
    total_posts_scraped: int = 0

    def to_doc(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> SourceGroup:
        return cls(
            url=str(doc["url"]),
            name=str(doc.get("name") or ""),
            is_active=bool(doc.get("is_active", True)),
            last_scraped=doc.get("last_scraped"),
            total_posts_scraped=int(doc.get("total_posts_scraped") or 0),
        )


# -----------------------------
# Run summaries
# -----------------------------
@dataclass
class SourceBreakdown:
    source_url: str
    found: int = 0
    saved: int = 0
    duplicates: int = 0
    failed: int = 0


@dataclass
class JobExtraction:
    success: bool = True
    method: str | None = None  # "external_ai" | "local_fallback" | "mixed"
    structured_count: int = 0
    saved_count: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None


@dataclass
class PipelineSummary:
    """What a caller gets back from one orchestration: explicit counts, never a bare flag."""

    run_id: str
    status: str
    aborted: bool = False
    timed_out: bool = False
    total_posts: int = 0
    saved: int = 0
    duplicates: int = 0
    failed: int = 0
    per_source: list[SourceBreakdown] = field(default_factory=list)
    job_extraction: JobExtraction = field(default_factory=JobExtraction)
    partial_processed: bool = True
    execution_time: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
