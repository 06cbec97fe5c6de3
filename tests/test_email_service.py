import pytest

from tollgate.service.email import EmailService


def test_dev_mode_collects_messages(notifier):
    assert not notifier.is_configured

    assert notifier.send_email_change_verification("new@example.com", "042917", expires_hours=24)

    message = notifier.outbox[-1]
    assert message["to"] == "new@example.com"
    assert "042917" in message["text"]
    assert "24 hours" in message["text"]


def test_smtp_failure_returns_false(monkeypatch):
    service = EmailService(smtp_host="smtp.invalid", smtp_port=2525, from_email="noreply@example.com")

    def refuse(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr("tollgate.service.email.smtplib.SMTP", refuse)

    assert service.send_password_reset("user@example.com", "https://app/reset") is False


async def test_dispatch_runs_in_background_and_drains(notifier):
    notifier.dispatch(
        notifier.send(notifier.send_email_verification, "user@example.com", "https://app/verify"),
        label="verify",
    )

    await notifier.drain()

    assert notifier.outbox[-1]["subject"] == "Verify your email"


async def test_dispatch_failure_does_not_propagate(notifier):
    async def broken():
        raise RuntimeError("boom")

    notifier.dispatch(broken(), label="broken")

    await notifier.drain()
    assert not notifier._pending


def test_html_body_escapes_addresses_and_links(notifier):
    html_body, text_body = notifier._render(
        "Your email address was changed",
        ['changed from <b>old@example.com</b> to "new"@example.com', "https://app/reset?a=1&b=2"],
    )

    assert "<b>old@example.com</b>" not in html_body
    assert "&lt;b&gt;old@example.com&lt;/b&gt;" in html_body
    assert "&quot;new&quot;@example.com" in html_body
    assert "a=1&amp;b=2" in html_body
    assert "<b>old@example.com</b>" in text_body
