# -*- coding: utf-8 -*-
"""Plain-text email delivery via SMTP."""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from flask import current_app

logger = logging.getLogger(__name__)


class ReportMailer:
    """Sends report and alert emails using the MAIL_* settings."""

    def __init__(
        self,
        smtp_server: Optional[str] = None,
        smtp_port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
    ) -> None:
        cfg = current_app.config if current_app else {}
        self.smtp_server = smtp_server or cfg.get("MAIL_SERVER", "")
        self.smtp_port = int(smtp_port or cfg.get("MAIL_PORT", 587))
        self.username = username or cfg.get("MAIL_USERNAME", "")
        self.password = password or cfg.get("MAIL_PASSWORD", "")
        self.use_tls = bool(cfg.get("MAIL_USE_TLS", True) if use_tls is None else use_tls)
        self.sender = sender or cfg.get("MAIL_DEFAULT_SENDER") or self.username

    def send(self, to_emails: list[str], subject: str, body: str) -> bool:
        to_emails = [email for email in to_emails if email]
        if not to_emails:
            return False

        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = ", ".join(to_emails)
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", _charset="utf-8"))

        if not (self.smtp_server and self.username and self.password):
            logger.warning("SMTP is not fully configured; skip email send")
            return False

        try:
            if self.use_tls:
                server = smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=20)
                server.starttls()
            else:
                server = smtplib.SMTP_SSL(self.smtp_server, self.smtp_port, timeout=20)

            server.login(self.username, self.password)
            server.send_message(msg)
            server.quit()
            logger.info("Email '%s' sent to %s", subject, to_emails)
            return True
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email")
            return False
