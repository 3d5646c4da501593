"""
Client for the remote scrape engine (Apify actor runs).

The engine is addressed through four calls, mirrored by the ScrapeEngine
protocol so tests can substitute a fake:

    start(config)        -> run id
    get_status(run_id)   -> RunStatus
    get_results(run_id)  -> list of raw item dicts
    abort(run_id)        -> None

Status polls and aborts run inside the watchdog budget, so they go through a
client without transport retries and accept a per-call timeout.
"""

from __future__ import annotations

from typing import Any, Protocol

import requests

from . import logging_bridge
from .config import RunConfig
from .http_client import HttpClient
from .models import RunStatus


class EngineError(RuntimeError):
    """Raised when the scrape engine cannot be reached or rejects a call."""


class ScrapeEngine(Protocol):
    def start(self, config: RunConfig) -> str: ...

    def get_status(self, run_id: str, timeout: float | None = None) -> RunStatus: ...

    def get_results(self, run_id: str) -> list[dict[str, Any]]: ...

    def abort(self, run_id: str, timeout: float | None = None) -> None: ...


# Engine status strings -> run state machine
_STATUS_MAP = {
    "SUCCEEDED": RunStatus.SUCCEEDED,
    "FAILED": RunStatus.FAILED,
    "TIMED-OUT": RunStatus.FAILED,
    "ABORTED": RunStatus.ABORTED,
}


def map_status(raw: str | None) -> RunStatus:
    """READY / RUNNING / ABORTING / TIMING-OUT and anything unknown stay RUNNING."""
    return _STATUS_MAP.get(str(raw or "").strip().upper(), RunStatus.RUNNING)


class ApifyEngine:
    def __init__(
        self,
        token: str,
        *,
        actor_id: str = "apify~facebook-groups-scraper",
        base_url: str = "https://api.apify.com/v2",
        http: HttpClient | None = None,
        control_http: HttpClient | None = None,
        abort_timeout: float | None = None,
    ):
        if not token:
            raise EngineError("Apify token is required (set APIFY_API_TOKEN).")
        self._token = token
        self._actor_url = f"{base_url.rstrip('/')}/acts/{actor_id}"
        self._http = http or HttpClient()
        self._control_http = control_http or HttpClient(retries=0)
        self._abort_timeout = abort_timeout

    def _params(self) -> dict[str, str]:
        return {"token": self._token}

    def start(self, config: RunConfig) -> str:
        payload = config.to_engine_input()
        logging_bridge.activity({
            "component": "group_watch.engine",
            "op": "start",
            "sources": list(config.source_urls),
            "input": {k: v for k, v in payload.items() if k != "startUrls"},
        })
        try:
            body = self._http.post_json(f"{self._actor_url}/runs", payload=payload, params=self._params())
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Failed to start run: {e}") from e
        run_id = ((body or {}).get("data") or {}).get("id")
        if not run_id:
            raise EngineError(f"Engine did not return a run id: {str(body)[:200]}")
        return str(run_id)

    def get_status(self, run_id: str, timeout: float | None = None) -> RunStatus:
        try:
            body = self._control_http.get_json(
                f"{self._actor_url}/runs/{run_id}", params=self._params(), timeout=timeout
            )
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Failed to read status of run {run_id}: {e}") from e
        return map_status(((body or {}).get("data") or {}).get("status"))

    def get_results(self, run_id: str) -> list[dict[str, Any]]:
        try:
            body = self._http.get_json(f"{self._actor_url}/runs/{run_id}/dataset/items", params=self._params())
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Failed to fetch results of run {run_id}: {e}") from e
        return body if isinstance(body, list) else []

    def abort(self, run_id: str, timeout: float | None = None) -> None:
        try:
            self._control_http.post_json(
                f"{self._actor_url}/runs/{run_id}/abort",
                params=self._params(),
                timeout=timeout or self._abort_timeout,
            )
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Failed to abort run {run_id}: {e}") from e
        logging_bridge.activity({"component": "group_watch.engine", "op": "abort", "run_id": run_id})

    def close(self) -> None:
        self._http.close()
        self._control_http.close()
