import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib

from taskboard.core.config import Settings

logger = logging.getLogger(__name__)


class Mailer:
    """Outbound email over SMTP with STARTTLS. Delivery failures are logged, never raised."""

    def __init__(self, settings: Settings):
        self.host = settings.email_host
        self.port = settings.email_port
        self.username = settings.email_user
        self.password = settings.email_pass
        self.sender = settings.email_from

    @property
    def configured(self) -> bool:
        return bool(self.host)

    async def send(self, to_email: str, subject: str, text: str, html: str | None = None) -> bool:
        if not self.configured:
            logger.warning(f"Email skipped, SMTP not configured: {subject[:50]}")
            return False

        msg = MIMEMultipart("alternative")
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                start_tls=True,
                timeout=10,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Email to {to_email} failed: {e}")
            return False
        logger.info(f"Email sent to {to_email}: {subject}")
        return True
