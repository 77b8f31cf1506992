"""Email notification service."""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from ..config import EmailConfig

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "[lending-hub]"


def build_email(sender: str, recipient: str, subject: str, body: str) -> MIMEMultipart:
    msg = MIMEMultipart()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = f"{SUBJECT_PREFIX} {subject or 'Health alert'}"
    msg.attach(MIMEText(body, "plain", "utf-8"))
    return msg


class EmailNotifier:
    """Alert-only channel; status logs are not emailed."""

    def __init__(self, config: EmailConfig) -> None:
        self.alert_email = config.alert_email
        self.smtp_server = config.smtp_server
        self.smtp_port = config.smtp_port
        self.sender_email = config.sender_email
        self.sender_password = config.sender_password

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(self.sender_email, self.sender_password)
            server.send_message(msg)

    async def send_alert(self, message: str, subject: str = "") -> bool:
        if not self.alert_email:
            logger.debug("No alert email configured, skipping email")
            return False
        if not self.sender_email or not self.sender_password:
            logger.warning("Email credentials not configured")
            return False

        msg = build_email(self.sender_email, self.alert_email, subject, message)
        try:
            # smtplib blocks; keep it off the event loop.
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email: %s", e)
            return False
        logger.info("Alert email sent to %s", self.alert_email)
        return True

    async def send_log(self, message: str, silent: bool = True) -> bool:
        return False
