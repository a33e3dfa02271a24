"""
周期账单生成

Sweeps due services and billable items. Service lines carry no renewal metadata because the
due date is advanced here; paying the invoice must not extend it again.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import utcnow
from domain.provisioning.entity import Service, ServiceStatus

from .entity import Invoice, InvoiceItem
from .ledger import InvoiceLedger

logger = get_logger(__name__)


def _still_due(service: Service, now: datetime) -> bool:
    return (
        service.status == ServiceStatus.ACTIVE
        and service.next_due_date is not None
        and service.next_due_date <= now
    )


class RecurringChargeGenerator:
    def __init__(self, uow: AbstractUnitOfWork, ledger: InvoiceLedger, *, due_days: int = 3):
        self.uow = uow
        self.ledger = ledger
        self.due_days = due_days

    async def generate(self, now: Optional[datetime] = None) -> List[Invoice]:
        now = now or utcnow()
        due_date = now + timedelta(days=self.due_days)
        created: List[Invoice] = []
        created.extend(await self._services(now, due_date))
        created.extend(await self._billable_items(now, due_date))
        logger.info("recurring_invoices_generated", count=len(created))
        return created

    async def _services(self, now: datetime, due_date: datetime) -> List[Invoice]:
        created: List[Invoice] = []
        for candidate in await self.uow.service_repository.list_due(now):
            # 与续费合并共用客户行锁，加锁后重新读取服务
            await self.uow.client_repository.lock(candidate.client_id)
            service = await self.uow.service_repository.get_for_update(candidate.id)
            if service is None or not _still_due(service, now):
                logger.debug("recurring_service_no_longer_due", service_id=candidate.id)
                continue
            if await self.uow.invoice_repository.find_open_referencing(service_id=service.id):
                logger.debug("recurring_service_already_invoiced", service_id=service.id)
                continue
            period_start = service.next_due_date
            period_end = service.advance_due_date()
            line = InvoiceItem(
                id=None,
                invoice_id=None,
                description=(
                    f"{service.product_name} - {service.domain or 'Service'} "
                    f"({period_start:%Y-%m-%d} - {period_end:%Y-%m-%d})"
                ),
                unit_price=service.amount,
                total_amount=service.amount,
                service_id=service.id,
            )
            invoice = await self.ledger.create_for_client(service.client_id, [line], due_date=due_date, now=now)
            await self.uow.service_repository.update(service)
            created.append(invoice)
            logger.info(
                "recurring_service_invoiced",
                service_id=service.id,
                invoice_id=invoice.id,
                next_due_date=service.next_due_date,
            )
        return created

    async def _billable_items(self, now: datetime, due_date: datetime) -> List[Invoice]:
        created: List[Invoice] = []
        for item in await self.uow.billable_item_repository.list_due(now):
            await self.uow.client_repository.lock(item.client_id)
            if await self.uow.invoice_repository.find_open_referencing(billable_item_id=item.id):
                logger.debug("billable_item_already_invoiced", billable_item_id=item.id)
                continue
            line = InvoiceItem(
                id=None,
                invoice_id=None,
                description=item.description,
                unit_price=item.amount,
                total_amount=item.line_total,
                quantity=item.quantity,
                billable_item_id=item.id,
            )
            invoice = await self.ledger.create_for_client(item.client_id, [line], due_date=due_date, now=now)
            item.mark_invoiced()
            await self.uow.billable_item_repository.update(item)
            created.append(invoice)
            logger.info("billable_item_invoiced", billable_item_id=item.id, invoice_id=invoice.id)
        return created
