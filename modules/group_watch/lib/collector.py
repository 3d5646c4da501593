from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from . import logging_bridge
from .models import RawPost
from .scrape_engine import ScrapeEngine
from .utils import now_iso, sample


@dataclass
class Partition:
    """Posts bucketed by requested source URL; `unmatched` still counts towards the total."""

    by_source: dict[str, list[RawPost]] = field(default_factory=dict)
    unmatched: list[RawPost] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(v) for v in self.by_source.values()) + len(self.unmatched)


class ResultCollector:
    def __init__(self, engine: ScrapeEngine):
        self.engine = engine

    def fetch(self, run_id: str) -> list[RawPost]:
        """
        Whatever the run produced so far, whether it finished or was aborted.
        Engine errors propagate to the caller; malformed items are skipped.
        """
        items = self.engine.get_results(run_id)
        scraped_at = now_iso()
        posts: list[RawPost] = []
        for item in items:
            try:
                posts.append(RawPost.from_engine_item(item, scraped_at=scraped_at))
            except (TypeError, ValueError) as e:
                logging_bridge.error({
                    "component": "group_watch.collector",
                    "op": "bad_item",
                    "run_id": run_id,
                    "error": repr(e),
                    "sample": sample(item),
                })
        logging_bridge.activity({
            "component": "group_watch.collector",
            "op": "fetched",
            "run_id": run_id,
            "items": len(items),
            "posts": len(posts),
        })
        return posts


def partition(posts: Iterable[RawPost], source_urls: Iterable[str]) -> Partition:
    """Exact string match of each post's source URL against the requested URLs."""
    result = Partition(by_source={u: [] for u in source_urls})
    for post in posts:
        bucket = result.by_source.get(post.source_url)
        if bucket is None:
            result.unmatched.append(post)
        else:
            bucket.append(post)
    return result
