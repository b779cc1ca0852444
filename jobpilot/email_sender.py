"""Send application emails over SMTP (STARTTLS + login)."""
from __future__ import annotations

import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Any

from jobpilot.config import get_env
from jobpilot.log import get_logger
from jobpilot.retry import retry

log = get_logger(__name__)


@retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, OSError))
def _smtp_send(
    host: str, port: int, user: str, password: str,
    from_addr: str, to_addr: str, msg: MIMEMultipart,
) -> None:
    with smtplib.SMTP(host, port, timeout=30) as server:
        server.starttls()
        if user:
            server.login(user, password)
        server.sendmail(from_addr, [to_addr], msg.as_string())


class SmtpEmailSender:
    def __init__(
        self,
        host: str = "",
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
    ) -> None:
        self.host = host or get_env("SMTP_HOST")
        self.port = port
        self.user = user if user is not None else get_env("SMTP_USER")
        self.password = password if password is not None else get_env("SMTP_PASSWORD")

    @classmethod
    def from_settings(cls, smtp_settings: dict[str, Any]) -> "SmtpEmailSender":
        return cls(host=smtp_settings.get("host", ""), port=int(smtp_settings.get("port", 587)))

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def send(
        self,
        to_addr: str,
        subject: str,
        body: str,
        *,
        from_addr: str,
        from_name: str = "",
        attachments: list[Path] | None = None,
    ) -> str:
        """Send one plain-text message; returns its Message-ID."""
        if not self.configured:
            raise RuntimeError("SMTP not configured (set SMTP_HOST, SMTP_USER, SMTP_PASSWORD in .env)")

        msg = MIMEMultipart()
        msg["Subject"] = subject
        msg["From"] = formataddr((from_name, from_addr)) if from_name else from_addr
        msg["To"] = to_addr
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(body, "plain", "utf-8"))
        for path in attachments or []:
            part = MIMEApplication(path.read_bytes(), Name=path.name)
            part["Content-Disposition"] = f'attachment; filename="{path.name}"'
            msg.attach(part)

        _smtp_send(self.host, self.port, self.user, self.password, from_addr, to_addr, msg)
        log.info("Email sent to %s (%s)", to_addr, msg["Message-ID"])
        return msg["Message-ID"]
