"""Notification senders. Delivery is a single best-effort attempt."""

from __future__ import annotations

import logging
import os
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class NotificationSender:
    """Accepts (recipients, subject, body). Failure surfaces as an exception."""

    def send(self, recipients: list[str], subject: str, body: str) -> None:
        raise NotImplementedError


@dataclass
class SentMessage:
    recipients: list[str]
    subject: str
    body: str


@dataclass
class DryRunSender(NotificationSender):
    """Logs and records messages instead of delivering them."""
    sent: list[SentMessage] = field(default_factory=list)

    def send(self, recipients: list[str], subject: str, body: str) -> None:
        self.sent.append(SentMessage(list(recipients), subject, body))
        logger.info("[dry-run] would send '%s' to %s", subject, ", ".join(recipients))


class SmtpSender(NotificationSender):
    """SMTP delivery of HTML alert bodies."""

    def __init__(self, host: str, port: int = 587, username: str = "", password: str = "",
                 from_email: Optional[str] = None, use_tls: bool = True, use_ssl: bool = False,
                 timeout: int = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email or username
        self.use_tls = use_tls
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "SmtpSender":
        load_dotenv()
        return cls(
            host=os.getenv("SMTP_HOST", ""),
            port=int(os.getenv("SMTP_PORT", "587")),
            username=os.getenv("SMTP_USERNAME", ""),
            password=os.getenv("SMTP_PASSWORD", ""),
            from_email=os.getenv("SMTP_FROM_EMAIL") or None,
            use_tls=os.getenv("SMTP_USE_TLS", "true").lower() == "true",
            use_ssl=os.getenv("SMTP_USE_SSL", "false").lower() == "true",
        )

    def is_available(self) -> bool:
        return bool(self.host and self.from_email)

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout,
                                      context=ssl.create_default_context())
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
        if self.username and self.password:
            server.login(self.username, self.password)
        return server

    def send(self, recipients: list[str], subject: str, body: str) -> None:
        if not self.is_available():
            raise RuntimeError("SMTP is not configured (set SMTP_HOST and SMTP_FROM_EMAIL)")
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.from_email
        message["To"] = ", ".join(recipients)
        message.attach(MIMEText(body, "html", "utf-8"))
        server = self._connect()
        try:
            server.sendmail(self.from_email, recipients, message.as_string())
        finally:
            server.quit()
        logger.info("Email sent to %s | Subject: %s", ", ".join(recipients), subject)
