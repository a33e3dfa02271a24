"""
结算引擎 - 把一笔成功付款转换为一致的账务与开通状态变更

Everything happens inside the caller's unit of work with the invoice row locked. Post-commit
work (mail, PDF, webhooks) is described by the returned events and never runs here.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from core.logging_config import get_logger
from domain.commission.service import CommissionDistributor
from domain.common.exceptions import (
    DuplicateTransactionException,
    InvoiceNotFoundException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import to_money, utcnow
from domain.provisioning.entity import OrderStatus
from domain.provisioning.service import ProvisioningService

from .entity import (
    Invoice,
    InvoiceStatus,
    InvoiceView,
    Transaction,
    TransactionStatus,
)
from .events import InvoicePaid, PaymentRecorded
from .ledger import InvoiceLedger

logger = get_logger(__name__)


def payment_idempotency_key(invoice_id: int, gateway: str, external_tx_id: str) -> str:
    base = f"payment|{invoice_id}|{gateway.strip().lower()}|{external_tx_id.strip()}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


@dataclass
class SettlementResult:
    invoice: Invoice
    transaction: Transaction
    view: InvoiceView
    events: List = field(default_factory=list)
    duplicate: bool = False


class SettlementEngine:
    """
    结算领域服务

    业务规则：
    1. 相同外部交易号 / 幂等键的回调只记账一次
    2. 只有状态首次变为 PAID 时才触发开通与佣金
    3. 任何数据库错误都回滚整笔结算
    """

    def __init__(self, uow: AbstractUnitOfWork, ledger: InvoiceLedger):
        self.uow = uow
        self.ledger = ledger
        self.provisioning = ProvisioningService(uow)
        self.commissions = CommissionDistributor(uow)
        self.events: List = []

    async def _lock_invoice(self, invoice_id: int) -> Invoice:
        invoice = await self.uow.invoice_repository.get_for_update(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        return invoice

    async def record_payment(
        self,
        invoice_id: int,
        amount: Decimal,
        gateway: str,
        external_tx_id: str,
        raw_response: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        now = now or utcnow()
        key = idempotency_key or payment_idempotency_key(invoice_id, gateway, external_tx_id)
        invoice = await self._lock_invoice(invoice_id)

        existing = await self.uow.transaction_repository.find_existing(external_tx_id, key)
        if existing is not None:
            logger.info(
                "payment_duplicate_ignored",
                invoice_id=invoice_id,
                external_tx_id=external_tx_id,
                transaction_id=existing.id,
            )
            view = await self.ledger.load_view(invoice.id)
            return SettlementResult(invoice=view.invoice, transaction=existing, view=view, duplicate=True)

        previous = invoice.apply_payment(amount, gateway, now)
        transaction = await self.uow.transaction_repository.create(Transaction(
            id=None,
            invoice_id=invoice.id,
            gateway=gateway,
            external_tx_id=external_tx_id,
            amount=to_money(amount),
            status=TransactionStatus.SUCCESS,
            idempotency_key=key,
            gateway_response=raw_response,
            created_at=now,
            updated_at=now,
        ))
        return await self._settle(invoice, transaction, previous, now)

    async def record_pending_payment(
        self,
        invoice_id: int,
        amount: Decimal,
        gateway: str,
        external_tx_id: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """人工支付（银行转账等）：先登记为 PENDING，待审核后再结算"""
        now = now or utcnow()
        key = idempotency_key or payment_idempotency_key(invoice_id, gateway, external_tx_id)
        invoice = await self._lock_invoice(invoice_id)
        if await self.uow.transaction_repository.find_existing(external_tx_id, key) is not None:
            raise DuplicateTransactionException(external_tx_id)
        amount = invoice.ensure_payable(amount)
        transaction = await self.uow.transaction_repository.create(Transaction(
            id=None,
            invoice_id=invoice.id,
            gateway=gateway,
            external_tx_id=external_tx_id,
            amount=amount,
            status=TransactionStatus.PENDING,
            idempotency_key=key,
            admin_notes=notes,
            created_at=now,
            updated_at=now,
        ))
        logger.info("payment_pending_recorded", invoice_id=invoice.id, transaction_id=transaction.id, amount=amount)
        return transaction

    async def confirm_pending_payment(
        self, transaction_id: int, *, now: Optional[datetime] = None
    ) -> SettlementResult:
        now = now or utcnow()
        transaction = await self.uow.transaction_repository.get_for_update(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(transaction_id)
        invoice = await self._lock_invoice(transaction.invoice_id)
        if transaction.status == TransactionStatus.SUCCESS:
            view = await self.ledger.load_view(invoice.id)
            return SettlementResult(invoice=view.invoice, transaction=transaction, view=view, duplicate=True)

        previous = invoice.apply_payment(transaction.amount, transaction.gateway, now)
        transaction.mark_succeeded(now)
        transaction = await self.uow.transaction_repository.update(transaction)
        return await self._settle(invoice, transaction, previous, now)

    async def reject_pending_payment(
        self, transaction_id: int, reason: Optional[str] = None, *, now: Optional[datetime] = None
    ) -> Transaction:
        now = now or utcnow()
        transaction = await self.uow.transaction_repository.get_for_update(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(transaction_id)
        transaction.mark_failed(reason, now)
        logger.info("payment_pending_rejected", transaction_id=transaction_id, reason=reason)
        return await self.uow.transaction_repository.update(transaction)

    async def _settle(
        self, invoice: Invoice, transaction: Transaction, previous: InvoiceStatus, now: datetime
    ) -> SettlementResult:
        await self.uow.invoice_repository.update(invoice)
        logger.info(
            "payment_recorded",
            invoice_id=invoice.id,
            transaction_id=transaction.id,
            gateway=transaction.gateway,
            amount=transaction.amount,
            amount_paid=invoice.amount_paid,
            status=invoice.status.value,
        )

        newly_paid = invoice.status == InvoiceStatus.PAID and previous != InvoiceStatus.PAID
        if newly_paid:
            await self._on_paid(invoice, now)

        view = await self.ledger.load_view(invoice.id)
        self.events.append(PaymentRecorded(view=view, transaction=transaction))
        if newly_paid:
            self.events.append(InvoicePaid(view=view))
        return SettlementResult(
            invoice=view.invoice,
            transaction=transaction,
            view=view,
            events=self.clear_events(),
        )

    async def _on_paid(self, invoice: Invoice, now: datetime) -> None:
        if invoice.order_id is not None:
            order = await self.uow.order_repository.get_for_update(invoice.order_id)
            if order is None:
                logger.warning("paid_invoice_order_missing", invoice_id=invoice.id, order_id=invoice.order_id)
            elif order.status == OrderStatus.PENDING:
                await self.provisioning.complete_order(order, now)
                await self.commissions.distribute_order_commissions(order, now)
            elif order.status != OrderStatus.COMPLETED:
                logger.warning(
                    "paid_invoice_order_not_completable",
                    invoice_id=invoice.id,
                    order_id=order.id,
                    order_status=order.status.value,
                )
        else:
            await self.provisioning.activate_invoice_targets(invoice, now)

        await self.provisioning.apply_renewals(invoice, now)
        await self.commissions.distribute_investor_commissions(invoice, now)

    def clear_events(self) -> List:
        """清空并返回领域事件（含开通事件）"""
        events = self.provisioning.clear_events() + self.events
        self.events = []
        return events
