"""Celery beat schedule configuration.

Both sweeps run once a day in UTC; the expiration sweep first so that renewals it bills are
already on an open invoice when recurring generation looks for unbilled services.
"""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "billing-check-expirations": {
        "task": "billing.check_expirations",
        "schedule": crontab(hour=0, minute=0),
    },
    "billing-generate-recurring-invoices": {
        "task": "billing.generate_recurring_invoices",
        "schedule": crontab(hour=1, minute=0),
    },
}
