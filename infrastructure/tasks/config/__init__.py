"""Celery app, queue names and the beat schedule for the billing worker."""
from .celery import BILLING_QUEUES, celery_app
from .beat import CELERY_BEAT_SCHEDULE

__all__ = ["celery_app", "BILLING_QUEUES", "CELERY_BEAT_SCHEDULE"]
