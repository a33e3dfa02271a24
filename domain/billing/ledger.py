"""
发票账本 - 发票创建、金额重算、软删除

All invoices, whether direct, from an order, recurring or consolidated, are created here so
numbering and tax rules live in one place.
"""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from core.logging_config import get_logger
from domain.common.exceptions import (
    ClientNotFoundException,
    DomainValidationException,
    InvoiceNotFoundException,
    OrderNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import ZERO, to_money, utcnow

from .entity import (
    Client,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    InvoiceView,
    RenewalKind,
    RenewalMetadata,
)
from .events import InvoiceCreated
from .settings import SettingsLookup

logger = get_logger(__name__)

_NUMBER_ATTEMPTS = 5


class InvoiceLedger:
    """账本领域服务"""

    def __init__(
        self,
        uow: AbstractUnitOfWork,
        settings: SettingsLookup,
        *,
        default_due_days: int = 7,
        number_prefix: str = "INV",
    ):
        self.uow = uow
        self.settings = settings
        self.default_due_days = default_due_days
        self.number_prefix = number_prefix
        self.events: List = []  # 领域事件收集

    async def generate_number(self, now: datetime) -> str:
        """``INV-YYYYMMDD-NNNN``; re-drawn on collision."""
        for _ in range(_NUMBER_ATTEMPTS):
            candidate = f"{self.number_prefix}-{now:%Y%m%d}-{random.randint(0, 9999):04d}"
            if not await self.uow.invoice_repository.exists_by_number(candidate):
                return candidate
        raise DomainValidationException("无法生成唯一的发票号", field="invoice_number")

    async def compute_tax(self, subtotal: Decimal, client: Client) -> Decimal:
        if client.tax_exempt:
            return ZERO
        rate = await self.settings.get_tax_rate()
        return to_money(subtotal * rate)

    async def recalculate_totals(self, invoice: Invoice, client: Client) -> None:
        subtotal = sum((item.total_amount for item in invoice.items), ZERO)
        invoice.set_totals(subtotal, await self.compute_tax(subtotal, client))

    async def _load_client(self, client_id: int) -> Client:
        client = await self.uow.client_repository.get_by_id(client_id)
        if client is None:
            raise ClientNotFoundException(client_id)
        return client

    async def create_invoice(
        self,
        client: Client,
        lines: List[InvoiceItem],
        *,
        due_date: Optional[datetime] = None,
        order_id: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        announce: bool = True,
    ) -> Invoice:
        """
        创建发票

        ``announce=False`` suppresses the InvoiceCreated event for callers that emit their
        own notification (consolidation).
        """
        if not lines:
            raise DomainValidationException("发票至少需要一行明细", field="items")
        now = now or utcnow()
        invoice = Invoice(
            id=None,
            invoice_number=await self.generate_number(now),
            client_id=client.id,
            status=InvoiceStatus.UNPAID,
            due_date=due_date or now + timedelta(days=self.default_due_days),
            order_id=order_id,
            notes=notes,
            items=list(lines),
            created_at=now,
            updated_at=now,
        )
        await self.recalculate_totals(invoice, client)
        created = await self.uow.invoice_repository.create(invoice)
        logger.info(
            "invoice_created",
            invoice_id=created.id,
            invoice_number=created.invoice_number,
            client_id=client.id,
            total=created.total_amount,
            order_id=order_id,
        )
        if announce:
            self.events.append(InvoiceCreated(view=InvoiceView(invoice=created, client=client)))
        return created

    async def create_for_client(self, client_id: int, lines: List[InvoiceItem], **kwargs) -> Invoice:
        return await self.create_invoice(await self._load_client(client_id), lines, **kwargs)

    async def create_from_order(self, order_id: int, *, now: Optional[datetime] = None) -> Invoice:
        """一个订单只对应一张发票；重复调用返回已有发票"""
        existing = await self.uow.invoice_repository.get_by_order_id(order_id)
        if existing is not None:
            return existing
        order = await self.uow.order_repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        client = await self._load_client(order.client_id)
        services = {
            s.product_id: s for s in await self.uow.service_repository.list_pending_for_order(order_id)
        }

        lines: List[InvoiceItem] = []
        for item in order.items:
            if item.is_domain:
                metadata = RenewalMetadata(RenewalKind.NEW_DOMAIN, item.billing_cycle.years)
                lines.append(InvoiceItem(
                    id=None,
                    invoice_id=None,
                    description=f"Domain Registration - {item.domain_name or item.product_name}",
                    unit_price=item.unit_price,
                    total_amount=item.total_price,
                    quantity=item.quantity,
                    metadata=metadata,
                ))
                continue
            service = services.get(item.product_id)
            lines.append(InvoiceItem(
                id=None,
                invoice_id=None,
                description=f"{item.product_name} ({item.billing_cycle.value})",
                unit_price=item.unit_price,
                total_amount=item.total_price,
                quantity=item.quantity,
                service_id=service.id if service else None,
                metadata=RenewalMetadata(RenewalKind.NEW_SERVICE, 1),
            ))
        return await self.create_invoice(client, lines, order_id=order.id, now=now)

    async def soft_delete(self, invoice: Invoice, note: str, *, now: Optional[datetime] = None) -> Invoice:
        invoice.soft_delete(note, now or utcnow())
        updated = await self.uow.invoice_repository.update(invoice)
        logger.info("invoice_soft_deleted", invoice_id=invoice.id, note=note)
        return updated

    async def load_view(self, invoice_id: int) -> InvoiceView:
        invoice = await self.uow.invoice_repository.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        return InvoiceView(invoice=invoice, client=await self._load_client(invoice.client_id))

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
