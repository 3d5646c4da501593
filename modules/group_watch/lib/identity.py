"""
Stable identity for structured jobs.

An identity is derived by running an ordered list of strategies; the first
one that returns a non-empty string wins. Natural strategies read URLs off the
candidate, so the same input always yields the same identity. The surrogate
strategy is appended only for code paths allowed to invent identities.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import time
from collections.abc import Callable, Sequence

from . import logging_bridge
from .models import JobCandidate
from .utils import sample

GENERATED_PREFIX = "generated:"
CONTENT_SAMPLE_CHARS = 50

Strategy = Callable[[JobCandidate], "str | None"]


class UnresolvableIdentity(ValueError):
    """No strategy produced an identity for the record."""


def _clean(value: str | None) -> str | None:
    s = (value or "").strip()
    return s or None


def explicit_url(c: JobCandidate) -> str | None:
    return _clean(c.post_url)


def first_attachment_url(c: JobCandidate) -> str | None:
    return _clean(c.attachment_urls[0]) if c.attachment_urls else None


def source_url(c: JobCandidate) -> str | None:
    return _clean(c.source_url)


def generated_surrogate(c: JobCandidate) -> str:
    """
    generated:<author>:<content hash>:<ms timestamp>:<random>

    The random suffix keeps two candidates with the same author, text and
    millisecond apart.
    """
    author = re.sub(r"[^A-Za-z0-9_-]", "", c.author_id or c.author_name or "") or "unknown"
    stripped = re.sub(r"\s+", "", c.content or "")[:CONTENT_SAMPLE_CHARS]
    digest = hashlib.sha1(stripped.encode("utf-8")).hexdigest()[:12] if stripped else "no-content"
    ts_ms = time.time_ns() // 1_000_000
    return f"{GENERATED_PREFIX}{author}:{digest}:{ts_ms}:{secrets.token_hex(8)}"


NATURAL_STRATEGIES: tuple[Strategy, ...] = (explicit_url, first_attachment_url, source_url)


def is_generated(identity: str) -> bool:
    return identity.startswith(GENERATED_PREFIX)


class IdentityResolver:
    def __init__(self, *, allow_generated: bool, strategies: Sequence[Strategy] = NATURAL_STRATEGIES):
        self.allow_generated = allow_generated
        self.strategies: tuple[Strategy, ...] = tuple(strategies) + (
            (generated_surrogate,) if allow_generated else ()
        )

    def resolve(self, candidate: JobCandidate) -> str:
        for strategy in self.strategies:
            identity = strategy(candidate)
            if identity:
                return identity
        logging_bridge.error({
            "component": "group_watch.identity",
            "op": "unresolvable",
            "strategies": [s.__name__ for s in self.strategies],
            "sample": sample(candidate),
        })
        raise UnresolvableIdentity("record has no URL, attachment or source URL")
