import pytest

from service import emailer


@pytest.fixture
def smtp_env(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "smtp.example.org")
    monkeypatch.setenv("SMTP_USERNAME", "bot@example.org")
    monkeypatch.setenv("SMTP_PASSWORD", "pw")
    monkeypatch.setattr(emailer.time, "sleep", lambda s: None)


def test_send_html_retries_transient_failures(smtp_env, monkeypatch):
    attempts = []

    def flaky(msg, *, rcpt_to, settings):
        attempts.append(rcpt_to)
        if len(attempts) < 3:
            raise emailer.TransientEmailError("421 try later")

    monkeypatch.setattr(emailer, "_send_via_smtp", flaky)
    msg_id = emailer.send_html(subject="Digest", html="<p>x</p>", to="a@example.com", bcc=["b@example.com"])

    assert msg_id.startswith("<") and len(attempts) == 3
    assert attempts[0] == ["a@example.com", "b@example.com"]


def test_send_html_gives_up_after_last_retry(smtp_env, monkeypatch):
    def down(msg, *, rcpt_to, settings):
        raise emailer.TransientEmailError("421 try later")

    monkeypatch.setattr(emailer, "_send_via_smtp", down)
    with pytest.raises(emailer.TransientEmailError):
        emailer.send_html(subject="Digest", html="<p>x</p>", to=["a@example.com"])


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"subject": "s", "html": "<p>x</p>", "to": []}, "No recipients"),
        ({"subject": " ", "html": "<p>x</p>", "to": ["a@example.com"]}, "subject"),
        ({"subject": "s", "html": "", "to": ["a@example.com"]}, "HTML"),
    ],
)
def test_send_html_validation(smtp_env, kwargs, message):
    with pytest.raises(emailer.EmailSendError, match=message):
        emailer.send_html(**kwargs)


def test_message_headers():
    msg = emailer._build_message(
        subject="Your job updates (2 new)",
        html="<ol><li>x</li></ol>",
        to=["a@example.com"],
        cc=[],
        from_name="Group Watch",
        from_addr="bot@example.org",
        headers={"X-Digest": "1", "Subject": "ignored"},
    )
    assert msg["From"] == "Group Watch <bot@example.org>"
    assert msg["Subject"] == "Your job updates (2 new)"
    assert msg["X-Digest"] == "1"
    assert "Cc" not in msg
