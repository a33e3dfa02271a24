"""
Celery tasks for the daily billing sweeps.

Each run gets its own event loop (``asyncio.run``) and therefore its own engine; post-commit
side effects are drained before the loop closes.
"""
from __future__ import annotations

import asyncio

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import billing_context, get_logger
from infrastructure.bootstrap import billing_service_scope

logger = get_logger(__name__)


@shared_task(name="billing.check_expirations", bind=True, base=BaseTask, max_retries=3, default_retry_delay=300)
def check_expirations(self) -> dict:
    async def _run():
        async with billing_service_scope() as service:
            return await service.run_expiration_sweep()

    with billing_context(sweep="expiration"):
        results = asyncio.run(_run())
        summary = {
            "clients": len(results),
            "consolidated": sum(1 for r in results if r.changed),
            "lines_added": sum(len(r.added) for r in results),
        }
        logger.info("expiration_sweep_task_finished", **summary)
    return summary


@shared_task(name="billing.generate_recurring_invoices", bind=True, base=BaseTask, max_retries=3, default_retry_delay=300)
def generate_recurring_invoices(self) -> dict:
    async def _run():
        async with billing_service_scope() as service:
            return await service.generate_recurring_invoices()

    with billing_context(sweep="recurring"):
        invoices = asyncio.run(_run())
        logger.info("recurring_invoice_task_finished", invoices=len(invoices))
    return {"invoices": [invoice.invoice_number for invoice in invoices]}
