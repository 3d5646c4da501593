# group_watch/http_client.py
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger(__name__)


class HttpClient:
    """Shared HTTP client with sane defaults and simple helpers."""

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = "GroupWatch/0.1 (+https://example.invalid)",
        retries: int = 3,
    ):
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset(["GET", "POST", "HEAD"]),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=20)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    # ---- convenience ----
    def get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """GET and parse JSON with clearer errors if decoding fails."""
        resp = self.session.get(url, params=params, headers=headers, timeout=timeout or self.timeout, **kwargs)
        resp.raise_for_status()
        return _decode_json(resp, url)

    def post_json(
        self,
        url: str,
        *,
        payload: Any = None,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """POST a JSON body and parse a JSON reply (None for an empty body)."""
        resp = self.session.post(
            url, json=payload, params=params, headers=headers, timeout=timeout or self.timeout, **kwargs
        )
        resp.raise_for_status()
        if not resp.content:
            return None
        return _decode_json(resp, url)

    def post_text(
        self,
        url: str,
        *,
        payload: Any = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> str:
        """POST a JSON body and return the decoded reply text, whatever its content type."""
        resp = self.session.post(url, json=payload, headers=headers, timeout=timeout or self.timeout, **kwargs)
        resp.raise_for_status()
        if not resp.encoding and resp.apparent_encoding:
            resp.encoding = resp.apparent_encoding
        return resp.text

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            LOG.debug("HttpClient.close() swallow", exc_info=True)


def _decode_json(resp: requests.Response, url: str) -> Any:
    # Prefer requests' decoder; fall back to manual if Content-Type is misleading.
    try:
        return resp.json()
    except ValueError as e:
        try:
            return json.loads(resp.text)
        except Exception:
            preview = resp.text[:200].replace("\n", " ")
            raise ValueError(f"JSON decode failed for {url!r}; body starts: {preview!r}") from e
