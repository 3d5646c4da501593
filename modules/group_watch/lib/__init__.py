# Re-export lib API for tests and main.py
from . import logging_bridge as log
from .config import ConfigError, RunConfig, Settings
from .digest import DigestEngine
from .identity import IdentityResolver, UnresolvableIdentity
from .pipeline import Coordinator, PipelineError
from .run_control import MemoryRunRegistry, RunController, StoreRunRegistry, abort_runs
from .store import DocumentStore
from .triggers import (
    Services,
    UnauthorizedError,
    abort,
    add_groups,
    list_groups,
    list_subscribers,
    remove_groups,
    run_digest,
    set_groups_active,
    subscribe,
    trigger_auto,
    trigger_manual,
    unsubscribe,
)

__all__ = [
    "ConfigError",
    "Coordinator",
    "DigestEngine",
    "DocumentStore",
    "IdentityResolver",
    "MemoryRunRegistry",
    "PipelineError",
    "RunConfig",
    "RunController",
    "Services",
    "Settings",
    "StoreRunRegistry",
    "UnauthorizedError",
    "UnresolvableIdentity",
    "abort",
    "abort_runs",
    "add_groups",
    "list_groups",
    "list_subscribers",
    "log",
    "remove_groups",
    "run_digest",
    "set_groups_active",
    "subscribe",
    "trigger_auto",
    "trigger_manual",
    "unsubscribe",
]
