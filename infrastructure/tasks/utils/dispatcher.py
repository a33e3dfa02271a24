"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..config.celery import celery_app


class TaskDispatcher:
    """Internal facade used by adapters to schedule tasks."""

    def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[List[Dict[str, str]]] = None,
    ) -> None:
        """Attachments are ``{"filename", "content_type", "content_b64"}`` dicts (JSON-safe)."""
        celery_app.send_task(
            "notifications.send_email",
            kwargs={"to": to, "subject": subject, "html_body": html_body, "attachments": attachments or []},
        )

    def deliver_webhook(self, url: str, event_name: str, body: str, signature: str) -> None:
        celery_app.send_task(
            "webhooks.deliver",
            kwargs={"url": url, "event_name": event_name, "body": body, "signature": signature},
        )

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> None:
        """Generic escape hatch for scheduling arbitrary tasks by name."""
        celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {})
