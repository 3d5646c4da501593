from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from .utils import getenv_str, truthy


# -----------------------------
# Exceptions
# -----------------------------
class ConfigError(ValueError):
    """Raised when provided kwargs/env cannot form a valid Settings."""


# -----------------------------
# Models
# -----------------------------
_ACTIONS = (
    "auto",
    "manual",
    "abort",
    "digest",
    "subscribe",
    "unsubscribe",
    "subscribers",
    "groups",
    "add_group",
    "activate_group",
    "deactivate_group",
    "remove_group",
)
# actions that name one or more tracked groups through source_urls
_GROUP_ACTIONS = ("add_group", "activate_group", "deactivate_group", "remove_group")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class RunConfig:
    """
    Input for one remote scrape run.
    - source_urls: group URLs to scrape (posts are matched back by exact URL)
    - max_posts / max_comments / max_photos: engine item caps
    - scrape_comments / scrape_photos: engine feature toggles
    """

    source_urls: tuple[str, ...]
    max_posts: int = 50
    max_comments: int = 0
    scrape_comments: bool = False
    scrape_photos: bool = True
    max_photos: int = 5

    def to_engine_input(self) -> dict[str, Any]:
        return {
            "startUrls": [{"url": u} for u in self.source_urls],
            "maxPosts": self.max_posts,
            "maxComments": self.max_comments,
            "scrapeComments": self.scrape_comments,
            "scrapePhotos": self.scrape_photos,
            "maxPhotos": self.max_photos,
        }


# Lighter profile for unattended runs
AUTO_PROFILE = {"max_posts": 30, "scrape_comments": False, "scrape_photos": True, "max_photos": 3}
MANUAL_PROFILE = {"max_posts": 50, "scrape_comments": False, "scrape_photos": True, "max_photos": 5}


@dataclass
class Settings:
    """
    Canonical configuration for a 'group_watch' run.

    The runner resolves any *_env kwarg (e.g. apify_token_env) to the value of
    the named environment variable before calling run(), so those fields hold
    secrets, not variable names.
    """

    action: str = "auto"

    # Storage
    sqlite_path: str = "/app/local/state/group_watch.db"

    # Remote scrape engine
    apify_token_env: str = ""
    actor_id: str = "apify~facebook-groups-scraper"
    apify_base_url: str = "https://api.apify.com/v2"

    # Structuring service
    structuring_url: str = ""
    structuring_endpoint: str = "/api/extract_job_posts"
    structuring_batch_size: int = 10
    structuring_delay_sec: float = 1.0

    # Timing
    watchdog_sec: float = 60.0
    poll_interval_sec: float = 3.0
    abort_timeout_sec: float = 10.0
    http_timeout_sec: float = 30.0

    # Policy
    process_partial_results: bool = True
    digest_limit: int = 5

    # Per-action inputs
    source_urls: list[str] = field(default_factory=list)
    max_posts: int | None = None
    max_comments: int = 0
    scrape_comments: bool | None = None
    scrape_photos: bool | None = None
    max_photos: int | None = None
    run_id: str | None = None
    email: str | None = None
    group_name: str = ""
    cron_key: str | None = field(default=None, repr=False)

    # ------------- convenience -------------
    def run_config(self, source_urls: list[str] | None = None) -> RunConfig:
        """Build the engine input for this action, profile defaults under explicit overrides."""
        profile = AUTO_PROFILE if self.action == "auto" else MANUAL_PROFILE
        urls = tuple(source_urls if source_urls is not None else self.source_urls)
        return RunConfig(
            source_urls=urls,
            max_posts=self.max_posts if self.max_posts is not None else profile["max_posts"],
            max_comments=self.max_comments,
            scrape_comments=(
                self.scrape_comments if self.scrape_comments is not None else profile["scrape_comments"]
            ),
            scrape_photos=self.scrape_photos if self.scrape_photos is not None else profile["scrape_photos"],
            max_photos=self.max_photos if self.max_photos is not None else profile["max_photos"],
        )

    @property
    def source_label(self) -> str:
        return "facebook_auto_scraping" if self.action == "auto" else "facebook_manual_scraping"

    # ------------- constructors -------------
    @classmethod
    def from_env_and_kwargs(cls, kwargs: Mapping[str, Any] | None) -> Settings:
        """
        Build Settings from kwargs with validation.

        Expected kwargs (all optional unless stated otherwise):

            action: "auto" | "manual" | "abort" | "digest" | "subscribe" | "unsubscribe"
                    | "subscribers" | "groups" | "add_group" | "activate_group"
                    | "deactivate_group" | "remove_group"
            sqlite_path: str = $GROUP_WATCH_DB or "/app/local/state/group_watch.db"
            apify_token_env: str  # RESOLVED token (runner expanded *_env already)

            watchdog_sec: float = 60
            poll_interval_sec: float = 3
            process_partial_results: bool = true
            digest_limit: int = 5

            # manual
            source_urls: list[str]
            max_posts / max_photos / max_comments: int
            # abort
            run_id: str
            # subscribe / unsubscribe
            email: str
            # group management
            source_urls: list[str]
            group_name: str       # add_group only
            # auto
            cron_key: str            # or cron_key_env, already resolved by the runner
        """
        kw = dict(kwargs or {})
        if kw.get("cron_key") is None and kw.get("cron_key_env"):
            kw["cron_key"] = kw["cron_key_env"]

        action = str(kw.get("action") or "auto").strip().lower()

        token = str(kw.get("apify_token_env") or "").strip() or (getenv_str("APIFY_API_TOKEN") or "")

        source_urls = kw.get("source_urls") or []
        if isinstance(source_urls, str):
            source_urls = [u for u in re.split(r"[\s,]+", source_urls) if u]
        if not isinstance(source_urls, list):
            raise ConfigError("'source_urls' must be a list of URLs.")

        settings = cls(
            action=action,
            sqlite_path=str(
                kw.get("sqlite_path") or os.getenv("GROUP_WATCH_DB") or "/app/local/state/group_watch.db"
            ),
            apify_token_env=token,
            actor_id=str(kw.get("actor_id") or "apify~facebook-groups-scraper"),
            apify_base_url=str(kw.get("apify_base_url") or "https://api.apify.com/v2").rstrip("/"),
            structuring_url=str(kw.get("structuring_url") or getenv_str("EXTERNAL_JOB_FILTER_API_URL") or "").rstrip(
                "/"
            ),
            structuring_endpoint=str(
                kw.get("structuring_endpoint")
                or getenv_str("EXTERNAL_JOB_FILTER_ENDPOINT")
                or "/api/extract_job_posts"
            ),
            structuring_batch_size=int(kw.get("structuring_batch_size") or 10),
            structuring_delay_sec=_float(kw, "structuring_delay_sec", 1.0),
            watchdog_sec=_float(kw, "watchdog_sec", 60.0),
            poll_interval_sec=_float(kw, "poll_interval_sec", 3.0),
            abort_timeout_sec=_float(kw, "abort_timeout_sec", 10.0),
            http_timeout_sec=_float(kw, "http_timeout_sec", 30.0),
            process_partial_results=truthy(kw.get("process_partial_results", True)),
            digest_limit=int(kw.get("digest_limit") or 5),
            source_urls=[str(u).strip() for u in source_urls if str(u).strip()],
            max_posts=_opt_int(kw, "max_posts"),
            max_comments=int(kw.get("max_comments") or 0),
            scrape_comments=truthy(kw["scrape_comments"]) if "scrape_comments" in kw else None,
            scrape_photos=truthy(kw["scrape_photos"]) if "scrape_photos" in kw else None,
            max_photos=_opt_int(kw, "max_photos"),
            run_id=(str(kw["run_id"]).strip() or None) if kw.get("run_id") else None,
            email=(str(kw["email"]).strip().lower() or None) if kw.get("email") else None,
            group_name=str(kw.get("group_name") or "").strip(),
            cron_key=str(kw["cron_key"]) if kw.get("cron_key") is not None else None,
        )
        _validate_settings(settings)
        return settings


# -----------------------------
# Helpers
# -----------------------------
def _float(kw: Mapping[str, Any], key: str, default: float) -> float:
    v = kw.get(key)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number.") from e


def _opt_int(kw: Mapping[str, Any], key: str) -> int | None:
    v = kw.get(key)
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be an integer.") from e


def is_group_url(url: str) -> bool:
    """True for http(s) facebook.com URLs whose path contains /groups/."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    on_facebook = host == "facebook.com" or host.endswith(".facebook.com")
    return parsed.scheme in ("http", "https") and on_facebook and "/groups/" in parsed.path


def _validate_settings(s: Settings) -> None:
    if s.action not in _ACTIONS:
        raise ConfigError(f"'action' must be one of {', '.join(_ACTIONS)} (got {s.action!r}).")
    if not s.sqlite_path.strip():
        raise ConfigError("'sqlite_path' cannot be empty.")

    if s.watchdog_sec <= 0 or s.poll_interval_sec <= 0:
        raise ConfigError("'watchdog_sec' and 'poll_interval_sec' must be > 0.")
    if s.abort_timeout_sec <= 0 or s.http_timeout_sec <= 0:
        raise ConfigError("'abort_timeout_sec' and 'http_timeout_sec' must be > 0.")
    if s.structuring_batch_size <= 0:
        raise ConfigError("'structuring_batch_size' must be >= 1.")
    if s.structuring_delay_sec < 0:
        raise ConfigError("'structuring_delay_sec' must be >= 0.")
    if s.digest_limit <= 0:
        raise ConfigError("'digest_limit' must be >= 1.")

    for name in ("max_posts", "max_photos"):
        v = getattr(s, name)
        if v is not None and v <= 0:
            raise ConfigError(f"'{name}' must be >= 1.")
    if s.max_comments < 0:
        raise ConfigError("'max_comments' must be >= 0.")

    if s.action == "manual":
        if not s.source_urls:
            raise ConfigError("Manual scraping requires at least one URL in 'source_urls'.")
        bad = [u for u in s.source_urls if not is_group_url(u)]
        if bad:
            raise ConfigError(f"Invalid Facebook group URL(s): {', '.join(bad)}")

    if s.action in ("subscribe", "unsubscribe") and not (s.email and _EMAIL_RE.match(s.email)):
        raise ConfigError(f"'email' must be a valid address for action '{s.action}'.")

    if s.action in _GROUP_ACTIONS and not s.source_urls:
        raise ConfigError(f"Action '{s.action}' requires at least one URL in 'source_urls'.")
    if s.action == "add_group":
        bad = [u for u in s.source_urls if not is_group_url(u)]
        if bad:
            raise ConfigError(f"Invalid Facebook group URL(s): {', '.join(bad)}")
