"""
Subscriber digests.

Per subscriber: jobs newest-first, minus everything already in sent_job_ids,
first K. Nothing pending means no send and no state change. State is written
only after the mail sender returns, so a failed send never marks jobs as sent.
The reverse gap (mail delivered, state write failed) raises DigestStateError
and is logged separately, since those jobs will be mailed again next run.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from . import logging_bridge
from .mailer import MailSender
from .models import StructuredJob, Subscriber
from .store import DocumentStore, StoreUnavailableError
from .utils import now_iso


class DigestStateError(RuntimeError):
    """The digest went out but the subscriber's sent ids could not be stored."""

    def __init__(self, email: str, job_ids: list[str], cause: Exception):
        super().__init__(f"digest mailed to {email} but sent ids were not stored: {cause!r}")
        self.email = email
        self.job_ids = job_ids


@dataclass
class DigestReport:
    subscribers: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    jobs_sent: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DigestEngine:
    def __init__(
        self,
        store: DocumentStore,
        sender: MailSender,
        *,
        limit: int = 5,
        clock: Callable[[], str] = now_iso,
    ):
        self.store = store
        self.sender = sender
        self.limit = limit
        self._clock = clock

    def job_pool(self) -> list[StructuredJob]:
        return [StructuredJob.from_doc(d) for d in self.store.find("jobs", newest_first=True)]

    def pending_for(self, subscriber: Subscriber, pool: list[StructuredJob]) -> list[StructuredJob]:
        sent = set(subscriber.sent_job_ids)
        return [j for j in pool if j.post_url not in sent][: self.limit]

    def deliver(self, subscriber: Subscriber, pool: list[StructuredJob]) -> int:
        """Send one digest and persist the new sent ids. Returns jobs sent (0 = skipped)."""
        items = self.pending_for(subscriber, pool)
        if not items:
            return 0
        self.sender.send_digest(subscriber.email, items)
        job_ids = [j.post_url for j in items]
        subscriber.record_sent(job_ids, self._clock())
        try:
            self.store.upsert("subscribers", subscriber.to_doc())
        except (sqlite3.Error, StoreUnavailableError) as e:
            raise DigestStateError(subscriber.email, job_ids, e) from e
        return len(items)

    def run(self) -> DigestReport:
        report = DigestReport()
        pool = self.job_pool()
        for doc in self.store.find("subscribers"):
            report.subscribers += 1
            subscriber = Subscriber.from_doc(doc)
            try:
                n = self.deliver(subscriber, pool)
            except DigestStateError as e:
                report.failed += 1
                _log_unrecorded(e, "deliver")
                continue
            except Exception as e:
                report.failed += 1
                logging_bridge.error({
                    "component": "group_watch.digest",
                    "op": "deliver",
                    "email": subscriber.email,
                    "error": repr(e),
                })
                continue
            if n:
                report.sent += 1
                report.jobs_sent += n
            else:
                report.skipped += 1

        logging_bridge.activity({
            "component": "group_watch.digest",
            "op": "summary",
            "pool": len(pool),
            **report.to_dict(),
        })
        return report

    def subscribe(self, email: str) -> dict[str, Any]:
        """Idempotent; a new subscriber gets a welcome digest right away (best-effort)."""
        email = email.strip().lower()
        if self.store.find_one("subscribers", email):
            return {"success": True, "created": False, "welcome_sent": False, "email": email, "jobs_sent": 0}

        subscriber = Subscriber(email=email, created_at=self._clock())
        self.store.upsert("subscribers", subscriber.to_doc())

        sent = 0
        try:
            sent = self.deliver(subscriber, self.job_pool())
        except DigestStateError as e:
            sent = len(e.job_ids)
            _log_unrecorded(e, "welcome")
        except Exception as e:
            logging_bridge.error({
                "component": "group_watch.digest",
                "op": "welcome",
                "email": email,
                "error": repr(e),
            })
        logging_bridge.activity({
            "component": "group_watch.digest",
            "op": "subscribed",
            "email": email,
            "jobs_sent": sent,
        })
        return {"success": True, "created": True, "welcome_sent": sent > 0, "email": email, "jobs_sent": sent}


def _log_unrecorded(e: DigestStateError, op: str) -> None:
    logging_bridge.error({
        "component": "group_watch.digest",
        "op": f"{op}_unrecorded",
        "email": e.email,
        "mailed": True,
        "job_ids": e.job_ids,
        "error": str(e),
    })
