from __future__ import annotations

from typing import Any

from .lib import triggers
from .lib.config import Settings
from .lib.logging_bridge import activity as log_activity

_DISPATCH = {
    "manual": triggers.trigger_manual,
    "abort": triggers.abort,
    "digest": triggers.run_digest,
    "subscribe": triggers.subscribe,
    "unsubscribe": triggers.unsubscribe,
    "subscribers": triggers.list_subscribers,
    "groups": triggers.list_groups,
    "add_group": triggers.add_groups,
    "activate_group": triggers.activate_groups,
    "deactivate_group": triggers.deactivate_groups,
    "remove_group": triggers.remove_groups,
}


def run(**kwargs: Any) -> dict[str, Any]:
    """
    Entry point for the 'group_watch' module.

    Accepts kwargs (from scheduler/runner), including:
      action: str = "auto"
          scraping:    "auto" | "manual" | "abort"
          digests:     "digest" | "subscribe" | "unsubscribe" | "subscribers"
          groups:      "groups" | "add_group" | "activate_group" | "deactivate_group" | "remove_group"
      sqlite_path: str = "/app/local/state/group_watch.db"
      apify_token_env: str = "APIFY_API_TOKEN"   # env var NAME; runner resolves it
      cron_key: str                              # auto only
      source_urls: list[str]                     # manual and group actions (auto: seeds `sources`)
      group_name: str                            # add_group only
      max_posts / max_photos / max_comments: int
      run_id: str                                # abort only
      email: str                                 # subscribe / unsubscribe
      services: triggers.Services                # injected collaborators (tests)

    Returns a meta dict (no HTML): digests are mailed per subscriber, so the
    runner has nothing to email on our behalf.

    Raises:
      ConfigError / UnauthorizedError on bad input, PipelineError when the run
      cannot be started or the store cannot be reached.
    """
    services = kwargs.pop("services", None)
    settings = Settings.from_env_and_kwargs(kwargs)

    log_activity({
        "component": "group_watch.main",
        "op": "start",
        "action": settings.action,
        "sources": settings.source_urls,
        "run_id": settings.run_id,
    })

    if settings.action == "auto":
        return triggers.trigger_auto(settings, services=services)
    return _DISPATCH[settings.action](settings, services=services)
