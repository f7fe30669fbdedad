import json
import smtplib

import httpx
import pytest

from taskmail.config import Settings
from taskmail.errors import SendError
from taskmail.utils import notifier
from taskmail.utils.notifier import (
    SmtpEmailSender,
    WebhookSender,
    build_sender,
    reminder_body,
    reminder_subject,
)

RELAY_URL = "https://relay.example.com/send"


def test_reminder_text():
    assert reminder_subject("Pay rent") == "Scheduled Reminder for Task: Pay rent"
    assert reminder_body("Pay rent") == 'This is a reminder for the task: "Pay rent".'


# ---------------------------------------------------------------------------
# Webhook relay
# ---------------------------------------------------------------------------

def _patch_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(notifier.httpx, "AsyncClient", factory)


@pytest.mark.asyncio
async def test_webhook_posts_reminder(monkeypatch):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    _patch_transport(monkeypatch, handler)
    await WebhookSender(RELAY_URL, token="s3cret").send("a@example.com", "Subject", "Body")

    [request] = seen
    assert str(request.url) == RELAY_URL
    assert request.headers["Authorization"] == "Bearer s3cret"
    assert json.loads(request.content) == {"to": "a@example.com", "subject": "Subject", "text": "Body"}


@pytest.mark.asyncio
async def test_webhook_rejection_raises_send_error(monkeypatch):
    _patch_transport(monkeypatch, lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(SendError, match="Notification relay returned 500"):
        await WebhookSender(RELAY_URL).send("a@example.com", "Subject", "Body")


@pytest.mark.asyncio
async def test_webhook_unreachable_raises_send_error(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    _patch_transport(monkeypatch, handler)

    with pytest.raises(SendError, match="Notification relay unreachable"):
        await WebhookSender(RELAY_URL).send("a@example.com", "Subject", "Body")


@pytest.mark.asyncio
async def test_empty_destination_is_refused():
    with pytest.raises(SendError, match="No destination address"):
        await WebhookSender(RELAY_URL).send("", "Subject", "Body")
    with pytest.raises(SendError, match="No destination address"):
        await SmtpEmailSender("localhost", 25).send("", "Subject", "Body")


def test_webhook_requires_url():
    with pytest.raises(ValueError):
        WebhookSender("")


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user, password))

    def send_message(self, msg):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.messages.append(msg)


@pytest.fixture()
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(notifier.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.mark.asyncio
async def test_smtp_delivers_message(fake_smtp):
    sender = SmtpEmailSender(
        "smtp.example.com",
        587,
        username="bot@example.com",
        password="pw",
        timeout=5.0,
    )
    await sender.send("renter@example.com", reminder_subject("Pay rent"), reminder_body("Pay rent"))

    [smtp] = fake_smtp.instances
    assert (smtp.host, smtp.port, smtp.timeout) == ("smtp.example.com", 587, 5.0)
    assert smtp.calls == ["starttls", ("login", "bot@example.com", "pw")]
    [msg] = smtp.messages
    assert msg["From"] == "bot@example.com"
    assert msg["To"] == "renter@example.com"
    assert msg["Subject"] == "Scheduled Reminder for Task: Pay rent"
    assert msg.get_content().strip() == 'This is a reminder for the task: "Pay rent".'


@pytest.mark.asyncio
async def test_smtp_without_tls_or_credentials(fake_smtp):
    await SmtpEmailSender("localhost", 25, use_tls=False, from_address="noreply@example.com").send(
        "a@example.com", "Subject", "Body"
    )
    [smtp] = fake_smtp.instances
    assert smtp.calls == []
    assert smtp.messages[0]["From"] == "noreply@example.com"


@pytest.mark.asyncio
async def test_smtp_failure_raises_send_error(fake_smtp):
    fake_smtp.fail_with = smtplib.SMTPRecipientsRefused({"a@example.com": (550, b"mailbox unavailable")})

    with pytest.raises(SendError, match="Failed to send email"):
        await SmtpEmailSender("localhost", 25).send("a@example.com", "Subject", "Body")


# ---------------------------------------------------------------------------
# Channel selection
# ---------------------------------------------------------------------------

def test_build_sender_defaults_to_smtp():
    sender = build_sender(Settings(email_host="smtp.example.com", email_user="bot@example.com"))
    assert isinstance(sender, SmtpEmailSender)
    assert sender.host == "smtp.example.com"
    assert sender.from_address == "bot@example.com"


def test_build_sender_webhook():
    settings = Settings(
        notification_channel="webhook",
        notification_webhook_url=RELAY_URL,
        notification_webhook_token="tok",
    )
    sender = build_sender(settings)
    assert isinstance(sender, WebhookSender)
    assert sender.url == RELAY_URL
    assert sender.token == "tok"


def test_build_sender_rejects_unknown_channel():
    with pytest.raises(ValueError, match="Unknown notification channel"):
        build_sender(Settings(notification_channel="carrier-pigeon"))
