from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from . import render
from .models import StructuredJob


class MailSender(Protocol):
    def send_digest(self, address: str, items: list[StructuredJob]) -> None:
        """Deliver one digest. Raises on transport failure."""
        ...


class SmtpDigestSender:
    """
    Digest delivery through service.emailer.

    `send_html` is injectable so tests can capture messages; by default the
    service emailer is imported lazily, which keeps the lib importable on its own.
    """

    def __init__(self, send_html: Callable[..., Any] | None = None):
        self._send_html = send_html

    def send_digest(self, address: str, items: list[StructuredJob]) -> None:
        send_html = self._send_html
        if send_html is None:
            from service.emailer import send_html
        send_html(subject=render.digest_subject(items), html=render.digest_html(items), to=[address])
