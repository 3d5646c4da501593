"""
External AI structuring service: client + response parser.

The service takes a JSON string of raw posts and answers with free-form JSON
(or text wrapping JSON). `parse_response` normalizes every shape seen in the
wild into a list of JobCandidate, so nothing downstream inspects raw dicts.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from . import logging_bridge
from .http_client import HttpClient
from .models import JobCandidate

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n(.*?)\n\s*```\s*$", re.IGNORECASE | re.DOTALL)


@dataclass
class StructuringResult:
    success: bool
    data: Any = None
    error: str | None = None


class Structurer(Protocol):
    def filter_and_structure(self, posts_json: str) -> StructuringResult: ...


class StructuringClient:
    def __init__(self, base_url: str, endpoint: str = "/api/extract_job_posts", *, http: HttpClient | None = None):
        self.url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}" if base_url else ""
        self._http = http or HttpClient()

    def filter_and_structure(self, posts_json: str) -> StructuringResult:
        """Never raises: transport and HTTP failures come back as success=False."""
        if not self.url:
            return StructuringResult(success=False, error="structuring service URL is not configured")
        try:
            text = self._http.post_text(
                self.url,
                payload={"postsText": posts_json},
                headers={"Accept": "application/json, text/plain"},
            )
        except requests.RequestException as e:
            logging_bridge.error({
                "component": "group_watch.structuring",
                "op": "call",
                "url": self.url,
                "error": repr(e),
            })
            return StructuringResult(success=False, error=str(e))
        try:
            data: Any = json.loads(text)
        except ValueError:
            data = text
        return StructuringResult(success=True, data=data)

    def close(self) -> None:
        self._http.close()


# ---- parsing ----------------------------------------------------------------


def _strip_fences(text: str) -> str:
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else [value]


def _extract_items(data: Any) -> list[Any]:
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, str):
        if not data.strip():
            return []
        try:
            return _as_list(json.loads(_strip_fences(data)))
        except ValueError:
            return []
    if isinstance(data, dict):
        result = data.get("result")
        output = result.get("Output") if isinstance(result, dict) else None
        job_data = output.get("jobData") if isinstance(output, dict) else None
        if isinstance(job_data, list):
            return job_data
        if isinstance(job_data, str):
            try:
                return _as_list(json.loads(_strip_fences(job_data)))
            except ValueError:
                pass
        for key in ("data", "jobs", "result"):
            if isinstance(data.get(key), list):
                return data[key]
        return [data]
    return []


def _str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _first(d: dict[str, Any], *keys: str) -> str | None:
    for k in keys:
        v = _str(d.get(k))
        if v:
            return v
    return None


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def candidate_from_dict(item: dict[str, Any]) -> JobCandidate:
    details = item.get("jobDetails") if isinstance(item.get("jobDetails"), dict) else {}
    user = item.get("user") if isinstance(item.get("user"), dict) else {}
    attachments = item.get("attachments") if isinstance(item.get("attachments"), list) else []
    skills = item.get("technicalSkills") or item.get("requirements") or details.get("requirements") or []
    if isinstance(skills, str):
        skills = [s.strip() for s in skills.split(",")]
    return JobCandidate(
        post_url=_str(item.get("postUrl")),
        attachment_urls=[a["url"] for a in attachments if isinstance(a, dict) and _str(a.get("url"))],
        source_url=_str(item.get("facebookUrl")),
        author_id=_str(user.get("id")),
        author_name=_str(user.get("name")),
        title=_first(item, "jobTitle", "title") or _str(details.get("title")),
        company=_str(item.get("company")) or _str(details.get("company")),
        location=_str(item.get("location")) or _str(details.get("location")),
        salary=_str(item.get("salary")) or _str(details.get("salary")),
        deadline=_first(item, "applicationDeadline", "deadline") or _str(details.get("applicationDeadline")),
        requirements=[str(s).strip() for s in skills if str(s).strip()] if isinstance(skills, list) else [],
        employment_type=_str(item.get("employmentType")),
        summary=_str(item.get("jobSummary")),
        how_to_apply=_str(item.get("howToApply")),
        content=_first(item, "originalPost", "text", "content"),
        likes=_int(item.get("likesCount")),
        comments=_int(item.get("commentsCount")),
    )


def parse_response(data: Any) -> list[JobCandidate]:
    """Zero or more candidates; non-object items are dropped and logged."""
    out: list[JobCandidate] = []
    dropped = 0
    for item in _extract_items(data):
        if isinstance(item, dict):
            out.append(candidate_from_dict(item))
        else:
            dropped += 1
    if dropped:
        logging_bridge.activity({
            "component": "group_watch.structuring",
            "op": "parse_dropped",
            "dropped": dropped,
            "kept": len(out),
        })
    return out
