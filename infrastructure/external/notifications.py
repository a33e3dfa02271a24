"""
Notification and mail adapters.

The notification sink writes structured log events; mail is handed to Celery so SMTP latency
never blocks the caller.
"""
from __future__ import annotations

import asyncio
import base64
from typing import Optional

from application.ports.notifications import MailAttachment, Mailer, NotificationSink
from core.logging_config import get_logger
from infrastructure.tasks.utils.dispatcher import TaskDispatcher

logger = get_logger("billing.notifications")


class StructlogNotificationSink(NotificationSink):
    """``user_id=None`` is an admin broadcast."""

    async def notify(
        self,
        user_id: Optional[int],
        severity: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> None:
        logger.info(
            "notification",
            audience="admins" if user_id is None else "user",
            user_id=user_id,
            severity=severity,
            title=title,
            message=message,
            link=link,
        )


class CeleryMailer(Mailer):
    def __init__(self, dispatcher: Optional[TaskDispatcher] = None):
        self.dispatcher = dispatcher or TaskDispatcher()

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[list[MailAttachment]] = None,
    ) -> None:
        encoded = [
            {
                "filename": a.filename,
                "content_type": a.content_type,
                "content_b64": base64.b64encode(a.content).decode("ascii"),
            }
            for a in attachments or []
        ]
        # send_task 是同步调用（连 broker），放到线程里
        await asyncio.to_thread(self.dispatcher.send_email, to, subject, html_body, encoded)
