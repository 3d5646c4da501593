# service/emailer.py
from __future__ import annotations

import os
import smtplib
import ssl
import time
import uuid
from email.message import EmailMessage
from email.utils import formatdate, formataddr, make_msgid

# ---- Errors -----------------------------------------------------------------


class EmailSendError(RuntimeError):
    """Raised when an email cannot be delivered."""


class TransientEmailError(EmailSendError):
    """4xx / dropped-connection failures worth retrying."""


# ---- Settings ---------------------------------------------------------------

_PROTECTED_HEADERS = {"from", "to", "cc", "bcc", "subject", "date", "message-id"}
_RETRY_DELAYS_SEC = (2, 4, 8)


def _env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v:
            return v
    return default


def _resolve_smtp_settings() -> dict:
    """
    SMTP settings from env:

      SMTP_HOST / SMTP_PORT               (default 127.0.0.1:587)
      SMTP_USERNAME / SMTP_PASSWORD
      SMTP_FROM / SMTP_FROM_NAME          (From defaults to the username)
      SMTP_USE_SSL = "true"               implicit TLS (port 465 style)
      SMTP_STARTTLS = "true"|"false"|"auto" (auto: on unless port 25/2525)
    """
    username = _env("SMTP_USERNAME", "SMTP_USER")
    use_ssl = (_env("SMTP_USE_SSL", default="false") or "").strip().lower() == "true"
    starttls = (_env("SMTP_STARTTLS", default="auto") or "auto").strip().lower()
    return {
        "host": _env("SMTP_HOST", default="127.0.0.1"),
        "port": int(_env("SMTP_PORT", default="587") or 587),
        "username": username,
        "password": _env("SMTP_PASSWORD", "SMTP_PASS"),
        "use_ssl": use_ssl,
        "starttls": "false" if use_ssl else starttls,
        "from_addr": _env("SMTP_FROM", "SMTP_FROM_EMAIL", default=username or ""),
        "from_name": _env("SMTP_FROM_NAME", default="Group Watch"),
    }


def _should_starttls(port: int, setting: str) -> bool:
    if setting in ("true", "false"):
        return setting == "true"
    return port not in (25, 2525)


def _clean(values: list[str] | str | None) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


# ---- Message + transport ----------------------------------------------------


def _build_message(
    *,
    subject: str,
    html: str,
    to: list[str],
    cc: list[str],
    from_name: str | None,
    from_addr: str,
    headers: dict[str, str] | None,
) -> EmailMessage:
    if not subject.strip():
        raise EmailSendError("Missing subject.")
    if not html.strip():
        raise EmailSendError("Missing HTML body.")

    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_addr)) if from_name else from_addr
    if to:
        msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Reply-To"] = from_addr
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg["X-Mailer-Nonce"] = uuid.uuid4().hex
    for k, v in (headers or {}).items():
        if k.lower() not in _PROTECTED_HEADERS:
            msg[k] = v

    msg.set_content("This message requires an HTML-capable client.")
    msg.add_alternative(html, subtype="html", charset="utf-8")
    return msg


def _send_via_smtp(msg: EmailMessage, *, rcpt_to: list[str], settings: dict) -> None:
    host, port = settings["host"], settings["port"]
    if not (host and settings["username"] and settings["password"]):
        raise EmailSendError("Missing SMTP credentials or host (SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD).")

    context = ssl.create_default_context()
    try:
        server = smtplib.SMTP_SSL(host, port, context=context) if settings["use_ssl"] else smtplib.SMTP(host, port)
        with server:
            server.ehlo()
            if not settings["use_ssl"] and _should_starttls(port, settings["starttls"]):
                server.starttls(context=context)
                server.ehlo()
            server.login(settings["username"], settings["password"])
            server.send_message(msg, to_addrs=rcpt_to)
    except smtplib.SMTPServerDisconnected as e:
        raise TransientEmailError(f"SMTP connection dropped: {e}") from e
    except smtplib.SMTPResponseException as e:
        if 400 <= e.smtp_code < 500:
            raise TransientEmailError(f"SMTP temporary failure {e.smtp_code}: {e.smtp_error!r}") from e
        raise EmailSendError(f"SMTP send failed {e.smtp_code}: {e.smtp_error!r}") from e
    except (smtplib.SMTPException, OSError) as e:
        raise EmailSendError(f"SMTP send failed: {e}") from e


# ---- Public API --------------------------------------------------------------


def send_html(
    *,
    subject: str,
    html: str,
    to: list[str] | str,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    headers: dict[str, str] | None = None,
) -> str:
    """
    Send an HTML email.

    Returns:
        The generated Message-ID.

    Raises:
        EmailSendError on validation, auth or transport failure. Temporary
        (4xx / disconnect) failures are retried with backoff first.
    """
    to_l, cc_l, bcc_l = _clean(to), _clean(cc), _clean(bcc)
    rcpt_to = [*to_l, *cc_l, *bcc_l]
    if not rcpt_to:
        raise EmailSendError("No recipients (to/cc/bcc).")

    settings = _resolve_smtp_settings()
    from_addr = (settings["from_addr"] or "").strip()
    if not from_addr:
        raise EmailSendError("No from address resolved. Set SMTP_FROM or SMTP_USERNAME.")

    msg = _build_message(
        subject=subject,
        html=html,
        to=to_l,
        cc=cc_l,
        from_name=settings["from_name"],
        from_addr=from_addr,
        headers=headers,
    )

    for delay in (*_RETRY_DELAYS_SEC, None):
        try:
            _send_via_smtp(msg, rcpt_to=rcpt_to, settings=settings)
            return str(msg["Message-ID"])
        except TransientEmailError:
            if delay is None:
                raise
            time.sleep(delay)
    raise EmailSendError("unreachable")  # pragma: no cover
