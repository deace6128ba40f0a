import logging
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
from arq import create_pool

from idbridge.config import Settings, get_settings
from idbridge.workers.settings import RECOVERY_QUEUE, get_redis_settings

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    """Email message."""

    to: str
    subject: str
    html_body: str
    text_body: str = ""


class EmailProvider:
    """Email delivery via SMTP."""

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_name = settings.smtp_from_name
        self.from_email = settings.smtp_from_email or settings.smtp_user

    def is_configured(self) -> bool:
        """Check if SMTP is configured."""
        return bool(self.smtp_host and self.smtp_user)

    async def send(self, message: EmailMessage) -> dict:
        """Send email via SMTP."""
        if not self.is_configured():
            return {"success": False, "error": "SMTP not configured"}

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to

        if message.text_body:
            msg.attach(MIMEText(message.text_body, "plain"))

        msg.attach(MIMEText(message.html_body, "html"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.smtp_user,
                password=self.smtp_password,
                start_tls=self.smtp_use_tls,
            )
        except aiosmtplib.SMTPException as e:
            logger.error("Email send failed: %s", e)
            return {"success": False, "error": str(e)}
        return {"success": True}


def build_recovery_notice(email: str, app_name: str) -> EmailMessage:
    text = (
        f"The password for your {app_name} account ({email}) was just reset.\n"
        "If this wasn't you, contact support immediately."
    )
    html = (
        f"<p>The password for your {app_name} account (<b>{email}</b>) was just reset.</p>"
        "<p>If this wasn't you, contact support immediately.</p>"
    )
    return EmailMessage(
        to=email,
        subject=f"Your {app_name} password was reset",
        html_body=html,
        text_body=text,
    )


async def enqueue_recovery_notice(email: str) -> None:
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("send_recovery_notice", email, _queue_name=RECOVERY_QUEUE)
        logger.info("Queued recovery notice for %s", email)
    finally:
        await redis.aclose()
