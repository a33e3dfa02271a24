"""Email related Celery tasks"""
from __future__ import annotations

import base64
import smtplib
from email.message import EmailMessage

from celery import shared_task

from ..utils.base_task import BaseTask
from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


def build_message(to: str, subject: str, html_body: str, attachments: list[dict]) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.smtp.from_address
    message["To"] = to
    message["Subject"] = subject
    message.set_content("This message requires an HTML capable mail client.")
    message.add_alternative(html_body, subtype="html")
    for attachment in attachments:
        maintype, _, subtype = attachment.get("content_type", "application/octet-stream").partition("/")
        message.add_attachment(
            base64.b64decode(attachment["content_b64"]),
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment["filename"],
        )
    return message


@shared_task(
    name="notifications.send_email",
    bind=True,
    base=BaseTask,
    autoretry_for=(smtplib.SMTPException, OSError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def send_email(self, to: str, subject: str, html_body: str, attachments: list[dict] | None = None) -> None:
    """Deliver one email over SMTP; without a configured host the message is only logged."""
    message = build_message(to, subject, html_body, attachments or [])
    smtp = settings.smtp
    if not smtp.host:
        logger.info("email_not_sent_no_smtp", to=to, subject=subject, attachments=len(attachments or []))
        return
    with smtplib.SMTP(smtp.host, smtp.port, timeout=30) as client:
        if smtp.use_tls:
            client.starttls()
        if smtp.username:
            client.login(smtp.username, smtp.password or "")
        client.send_message(message)
    logger.info("email_sent", to=to, subject=subject)
