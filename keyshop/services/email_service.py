from __future__ import annotations

import logging
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from html import escape
from typing import Callable, Optional

from keyshop.config import Config


class EmailService:
    """
    Outbound SMTP mail. Delivery is disabled (logged, returns False) when no
    SMTP host is configured; transport failures propagate to the caller.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.host = Config.SMTP_HOST if host is None else host
        self.port = port or Config.SMTP_PORT
        self.username = Config.SMTP_USERNAME if username is None else username
        self.password = Config.SMTP_PASSWORD if password is None else password
        self.use_tls = Config.SMTP_USE_TLS if use_tls is None else use_tls
        self.sender = sender or Config.EMAIL_FROM
        self.smtp_factory = smtp_factory
        self.logger = logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send_email(self, recipient: str, subject: str, text: str, html: str) -> bool:
        if not self.enabled:
            self.logger.info("SMTP not configured; skipping email to %s (%s)", recipient, subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{Config.APP_NAME} <{self.sender}>"
        msg["To"] = recipient
        msg["Date"] = formatdate(usegmt=True)
        domain = self.sender.split("@")[-1] if "@" in self.sender else "keyshop.local"
        msg["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"
        msg.attach(MIMEText(text, "plain", _charset="utf-8"))
        msg.attach(MIMEText(html, "html", _charset="utf-8"))

        with self.smtp_factory(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password)
            server.sendmail(self.sender, [recipient], msg.as_string())
        self.logger.info("Email sent to %s (%s)", recipient, subject)
        return True

    def send_key_delivery_email(self, recipient: str, product_title: str, key: str, platform: str) -> bool:
        subject = f"Your Game Key: {product_title}"
        text = (
            f"Thank you for your purchase!\n\n"
            f"Game: {product_title}\n"
            f"Platform: {platform}\n"
            f"Key: {key}\n\n"
            f"Redeem the key on {platform} to activate your game."
        )
        html = (
            "<h2>Thank you for your purchase!</h2>"
            f"<p><strong>Game:</strong> {escape(product_title)}</p>"
            f"<p><strong>Platform:</strong> {escape(platform)}</p>"
            f"<p><strong>Key:</strong> <code>{escape(key)}</code></p>"
            f"<p>Redeem the key on {escape(platform)} to activate your game.</p>"
        )
        return self.send_email(recipient, subject, text, html)
