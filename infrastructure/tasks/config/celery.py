"""Celery application for the billing sweeps, mail delivery and webhook delivery"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE

logger = get_logger(__name__)

TASK_PACKAGES = ("infrastructure.tasks.tasks",)

# 扫描任务优先，邮件其次，Webhook 投递最后
BILLING_QUEUES = ("billing", "notifications", "webhooks")


def _broker_url() -> str | None:
    return settings.redis.url or os.getenv("CELERY_BROKER_URL")


celery_app = Celery(settings.redis.namespace)

celery_app.conf.update(
    broker_url=_broker_url(),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 扫描中途 worker 退出时重新投递；扫描本身是幂等的
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=24 * 3600,
    worker_prefetch_multiplier=1,
    task_default_queue="notifications",
    task_queues=tuple(Queue(name) for name in BILLING_QUEUES),
    task_routes={
        "billing.*": {"queue": "billing"},
        "notifications.*": {"queue": "notifications"},
        "webhooks.*": {"queue": "webhooks"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
)

if settings.ENVIRONMENT.lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=TASK_PACKAGES)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker_configured=bool(sender.conf.broker_url),
        queues=list(BILLING_QUEUES),
        eager=bool(sender.conf.task_always_eager),
    )
