"""Webhook delivery task: POST the pre-signed body, retried with backoff on failure."""
from __future__ import annotations

from celery import shared_task
import httpx

from ..utils.base_task import BaseTask
from core.settings import gateway_settings
from core.logging_config import get_logger

logger = get_logger(__name__)


@shared_task(
    name="webhooks.deliver",
    bind=True,
    base=BaseTask,
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": gateway_settings.webhook.max_retries},
)
def deliver_webhook(self, url: str, event_name: str, body: str, signature: str) -> int:
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Event": event_name,
        gateway_settings.webhook.signature_header: signature,
    }
    with httpx.Client(timeout=gateway_settings.webhook.timeout) as client:
        response = client.post(url, content=body.encode("utf-8"), headers=headers)
    logger.info(
        "webhook_delivered" if response.is_success else "webhook_delivery_failed",
        url=url,
        event=event_name,
        status_code=response.status_code,
        attempt=self.request.retries,
    )
    # 非 2xx 触发重试
    response.raise_for_status()
    return response.status_code
