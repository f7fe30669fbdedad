import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

import httpx

from taskmail.config import Settings
from taskmail.errors import SendError

logger = logging.getLogger("taskmail.notifier")


def reminder_subject(task_name: str) -> str:
    return f"Scheduled Reminder for Task: {task_name}"


def reminder_body(task_name: str) -> str:
    return f'This is a reminder for the task: "{task_name}".'


class NotificationSender(Protocol):
    async def send(self, destination: str, subject: str, body: str) -> None: ...


class SmtpEmailSender:
    """Deliver reminders over SMTP (STARTTLS when enabled)."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_address: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username or "no-reply@localhost"
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_message(self, destination: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = destination
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    async def send(self, destination: str, subject: str, body: str) -> None:
        if not destination:
            raise SendError("No destination address")
        msg = self._build_message(destination, subject, body)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending email to %s: %s", destination, e)
            raise SendError(f"Failed to send email: {e}") from e
        logger.info("Email sent to %s", destination)


class WebhookSender:
    """Hand reminders to a mail-relay webhook as JSON."""

    def __init__(self, url: str, *, token: Optional[str] = None, timeout: float = 10.0) -> None:
        if not url:
            raise ValueError("Webhook url is required")
        self.url = url
        self.token = token
        self.timeout = timeout

    async def send(self, destination: str, subject: str, body: str) -> None:
        if not destination:
            raise SendError("No destination address")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {"to": destination, "subject": subject, "text": body}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("Relay rejected reminder (%s)", e.response.status_code)
            raise SendError(f"Notification relay returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Relay error: %s", e)
            raise SendError(f"Notification relay unreachable: {e}") from e
        logger.info("Reminder relayed for %s (%s)", destination, resp.status_code)


def build_sender(settings: Settings) -> NotificationSender:
    channel = (settings.notification_channel or "smtp").strip().lower()
    if channel == "webhook":
        return WebhookSender(
            settings.notification_webhook_url or "",
            token=settings.notification_webhook_token,
            timeout=settings.notification_timeout_seconds,
        )
    if channel == "smtp":
        return SmtpEmailSender(
            settings.email_host,
            settings.email_port,
            username=settings.email_user,
            password=settings.email_pass,
            from_address=settings.email_from,
            use_tls=settings.email_use_tls,
            timeout=settings.notification_timeout_seconds,
        )
    raise ValueError(f"Unknown notification channel: {settings.notification_channel}")
