from __future__ import annotations

from . import utils
from .identity import is_generated
from .models import StructuredJob


def digest_subject(jobs: list[StructuredJob]) -> str:
    return f"Your job updates ({len(jobs)} new)"


def _job_link(job: StructuredJob) -> str:
    # Generated identities are not URLs; point at the group instead.
    if is_generated(job.post_url):
        return job.source_url or ""
    return job.post_url


def digest_html(jobs: list[StructuredJob]) -> str:
    """
    Ordered list, one item per job:
      <li><strong>{title} at {company} - {location}</strong><br/><a>{link}</a></li>
    """
    items: list[str] = []
    for job in jobs:
        line = utils.esc(job.title or "Untitled Role")
        if job.company:
            line += f" at {utils.esc(job.company)}"
        if job.location:
            line += f" - {utils.esc(job.location)}"
        url = _job_link(job)
        link_html = f'<br/><a href="{utils.esc(url)}">{utils.esc(url)}</a>' if url else ""
        items.append(f"<li><strong>{line}</strong>{link_html}</li>")
    return "\n".join([
        "<div>",
        "<p>Here are your latest job updates:</p>",
        "<ol>",
        *items,
        "</ol>",
        "<p>You're receiving this because you subscribed to job updates.</p>",
        "</div>",
    ])
