"""
Local job extractor used when the structuring service is unavailable.

Ordered per-field heuristics over the post text:

  title     "Job Title:" / "Position:" label, else first line naming a role,
            else first non-empty line (markup and emoji stripped)
  company   first "Company: ..." line
  location  first "Location: ..." line, optionally symbol-prefixed
  deadline  only from an explicit upstream field, never guessed from text

Fields that cannot be determined get a placeholder instead of None.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any

from bs4 import BeautifulSoup

from .models import JobCandidate, RawPost

NOT_SPECIFIED = "Not specified"
DEFAULT_TITLE = "Job Opportunity"

_TITLE_LABEL_RE = re.compile(r"^.*?(?:Job\s+Title|Position)\s*:\s*(.+)$", re.IGNORECASE)
_ROLE_RE = re.compile(
    r"\b(developer|engineer|manager|executive|intern|analyst|specialist|coordinator|assistant|lead|senior|junior)\b",
    re.IGNORECASE,
)
_COMPANY_RE = re.compile(r"Company:\s*(.+)", re.IGNORECASE)
_LOCATION_RE = re.compile(r"^[^\w\n]*Location:\s*(.+)", re.IGNORECASE | re.MULTILINE)
_SALARY_RE = re.compile(r"Salary:\s*(.+)", re.IGNORECASE)
_MARKUP_RE = re.compile(r"[*_`#~]+")
_TAG_RE = re.compile(r"<[a-zA-Z/][^>]*>")

_JOB_KEYWORDS = (
    "hiring", "job", "position", "vacancy", "opportunity", "career", "developer", "engineer",
    "programmer", "designer", "manager", "analyst", "coordinator", "specialist", "consultant",
    "intern", "remote", "full-time", "part-time", "contract", "freelance", "apply", "cv",
    "resume", "qualification", "experience", "salary", "benefit", "requirement", "responsibility",
)  # fmt: skip
_CONTACT_RE = re.compile(r"email|phone|whatsapp|telegram|apply", re.IGNORECASE)
_SKILL_MENTION_RE = re.compile(r"skill|experience|year|requirement", re.IGNORECASE)

_TECH_SKILLS = (
    "javascript", "typescript", "react", "vue", "angular", "node.js", "express", "python",
    "django", "flask", "java", "spring", "php", "laravel", "c#", ".net", "ruby", "rails",
    "golang", "rust", "swift", "kotlin", "html", "css", "tailwind", "mysql", "postgresql",
    "mongodb", "redis", "aws", "azure", "gcp", "docker", "kubernetes", "git",
)  # fmt: skip
_EMPLOYMENT_TYPES = ("full-time", "part-time", "contract", "freelance", "internship", "temporary")


# ---- text cleanup -----------------------------------------------------------


def plain_text(content: str) -> str:
    """Drop HTML markup if the post carries any; plain text passes through."""
    if not _TAG_RE.search(content or ""):
        return content or ""
    return BeautifulSoup(content, "html.parser").get_text("\n")


def strip_decorations(line: str) -> str:
    """Remove emoji/pictographs, variation selectors and markdown emphasis."""
    kept = []
    for ch in line:
        cat = unicodedata.category(ch)
        if cat in ("So", "Cs", "Co") or ch in ("\ufe0f", "\u200d"):
            continue
        kept.append(ch)
    return " ".join(_MARKUP_RE.sub("", "".join(kept)).split())


def _lines(text: str) -> list[str]:
    return [ln for ln in (text or "").splitlines() if ln.strip()]


# ---- field heuristics -------------------------------------------------------


def extract_title(text: str) -> str:
    lines = _lines(text)
    for line in lines:
        m = _TITLE_LABEL_RE.match(line)
        if m:
            title = strip_decorations(m.group(1))
            if title:
                return title
    for line in lines:
        if _ROLE_RE.search(line):
            title = strip_decorations(line)
            if title:
                return title
    for line in lines:
        title = strip_decorations(line)
        if title:
            return title
    return DEFAULT_TITLE


def extract_company(text: str) -> str:
    m = _COMPANY_RE.search(text or "")
    return (strip_decorations(m.group(1)) if m else "") or NOT_SPECIFIED


def extract_location(text: str) -> str:
    m = _LOCATION_RE.search(text or "")
    return (strip_decorations(m.group(1)) if m else "") or NOT_SPECIFIED


def extract_salary(text: str) -> str | None:
    m = _SALARY_RE.search(text or "")
    if not m:
        return None
    return strip_decorations(m.group(1)) or None


def extract_skills(text: str) -> list[str]:
    low = (text or "").lower()
    return [s for s in _TECH_SKILLS if re.search(rf"(?<![\w.#]){re.escape(s)}(?![\w#])", low)]


def extract_employment_type(text: str) -> str | None:
    low = (text or "").lower()
    for t in _EMPLOYMENT_TYPES:
        if t in low:
            return t.title()
    return None


def looks_like_job_post(text: str) -> bool:
    low = (text or "").lower()
    has_keyword = any(k in low for k in _JOB_KEYWORDS)
    return has_keyword and bool(_CONTACT_RE.search(low) or _SKILL_MENTION_RE.search(low))


def _permalink(post: RawPost) -> str | None:
    """The engine's per-post `url`, when it is distinct from the group URL."""
    url = post.raw.get("url")
    if isinstance(url, str) and url.strip() and url.strip() != post.source_url:
        return url.strip()
    return None


def _explicit_deadline(raw: dict[str, Any]) -> str | None:
    for key in ("applicationDeadline", "deadline"):
        v = raw.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


# ---- public API -------------------------------------------------------------


def extract(post: RawPost) -> JobCandidate:
    text = plain_text(post.content)
    summary = " ".join(text.split())
    return JobCandidate(
        post_url=_permalink(post),
        attachment_urls=[a.url for a in post.attachments if a.url],
        source_url=post.source_url or None,
        author_id=post.author.id or None,
        author_name=post.author.name or None,
        title=extract_title(text),
        company=extract_company(text),
        location=extract_location(text),
        salary=extract_salary(text),
        deadline=_explicit_deadline(post.raw),
        requirements=extract_skills(text),
        employment_type=extract_employment_type(text),
        summary=summary[:100] + ("..." if len(summary) > 100 else ""),
        content=post.content,
        likes=post.engagement.get("likes", 0),
        comments=post.engagement.get("comments", 0),
    )
