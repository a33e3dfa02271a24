"""
退款工作流 - 两步审批（授权 -> 批准）

业务规则：
1. 只有 SUCCESS 且金额为正的交易可以退款
2. 每笔交易 Σ(未拒绝的退款) <= 交易金额，申请时与最终批准前各检查一次
3. 批准后生成一笔负数交易，并扣减发票已付金额
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import json

from core.logging_config import get_logger
from domain.common.exceptions import (
    InvoiceNotFoundException,
    PermissionDeniedException,
    RefundExceedsBalanceException,
    RefundNotFoundException,
    TransactionNotFoundException,
    TransactionNotRefundableException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import to_money, utcnow

from .entity import Refund, RefundStatus, Transaction, TransactionStatus
from .events import RefundCompleted, RefundRejected, RefundRequested
from .ledger import InvoiceLedger

logger = get_logger(__name__)

INTERNAL_REFUND_GATEWAY = "Internal Refund"


def _gateway_payment_id(transaction: Transaction) -> Optional[str]:
    """Gateway-side payment id recorded in the raw response (bKash paymentID)."""
    if not transaction.gateway_response:
        return None
    try:
        data = json.loads(transaction.gateway_response)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    value = data.get("paymentID") or data.get("paymentId")
    return str(value) if value else None


class Role(str, Enum):
    STAFF = "staff"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: Role


@dataclass
class RefundOutcome:
    refund: Refund
    transaction: Transaction
    settlement: Optional[Transaction] = None
    events: List = field(default_factory=list)


class RefundWorkflow:
    def __init__(self, uow: AbstractUnitOfWork, ledger: InvoiceLedger):
        self.uow = uow
        self.ledger = ledger
        self.events: List = []

    async def _lock_transaction(self, transaction_id: int) -> Transaction:
        transaction = await self.uow.transaction_repository.get_for_update(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(transaction_id)
        return transaction

    async def _get_refund(self, refund_id: int) -> Refund:
        refund = await self.uow.refund_repository.get_by_id(refund_id)
        if refund is None:
            raise RefundNotFoundException(refund_id)
        return refund

    async def _lock_refund(self, refund_id: int) -> tuple[Refund, Transaction]:
        """先锁交易行，再在锁内重新读取退款；状态与权限只看锁内读到的行"""
        peek = await self._get_refund(refund_id)
        transaction = await self._lock_transaction(peek.transaction_id)
        refund = await self.uow.refund_repository.get_for_update(refund_id)
        if refund is None:
            raise RefundNotFoundException(refund_id)
        return refund, transaction

    async def _check_ceiling(
        self, transaction: Transaction, amount: Decimal, exclude_refund_id: Optional[int] = None
    ) -> None:
        committed = await self.uow.refund_repository.sum_committed(transaction.id, exclude_refund_id)
        if committed + amount > transaction.amount:
            raise RefundExceedsBalanceException(amount, committed, transaction.amount)

    async def request_refund(
        self,
        transaction_id: int,
        amount: Decimal,
        reason: str,
        actor: Actor,
        *,
        now: Optional[datetime] = None,
    ) -> RefundOutcome:
        now = now or utcnow()
        amount = to_money(amount)
        transaction = await self._lock_transaction(transaction_id)
        if not transaction.is_refundable:
            raise TransactionNotRefundableException(
                transaction_id,
                f"status={transaction.status.value}, amount={transaction.amount}",
            )

        refund = Refund(
            id=None,
            transaction_id=transaction.id,
            amount=amount,
            reason=reason,
            status=RefundStatus.PENDING_AUTHORIZATION,
            requested_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        await self._check_ceiling(transaction, amount)

        if actor.role in (Role.ADMIN, Role.SUPER_ADMIN):
            refund.authorize(actor.user_id, now)
        refund = await self.uow.refund_repository.create(refund)
        logger.info(
            "refund_requested",
            refund_id=refund.id,
            transaction_id=transaction.id,
            amount=amount,
            role=actor.role.value,
            status=refund.status.value,
        )
        self.events.append(RefundRequested(
            refund_id=refund.id,
            transaction_id=transaction.id,
            amount=amount,
            status=refund.status.value,
            requested_by=actor.user_id,
        ))

        if actor.role == Role.SUPER_ADMIN:
            return await self._complete(refund, transaction, actor, now)
        return RefundOutcome(refund=refund, transaction=transaction, events=self.clear_events())

    async def authorize_refund(
        self, refund_id: int, actor: Actor, *, now: Optional[datetime] = None
    ) -> RefundOutcome:
        now = now or utcnow()
        if actor.role not in (Role.ADMIN, Role.SUPER_ADMIN):
            raise PermissionDeniedException("authorize refunds", actor.role.value)
        refund, transaction = await self._lock_refund(refund_id)
        refund.authorize(actor.user_id, now)
        refund = await self.uow.refund_repository.update(refund)
        logger.info("refund_authorized", refund_id=refund.id, actor_id=actor.user_id)
        return RefundOutcome(refund=refund, transaction=transaction, events=self.clear_events())

    async def approve_refund(
        self, refund_id: int, actor: Actor, *, now: Optional[datetime] = None
    ) -> RefundOutcome:
        now = now or utcnow()
        if actor.role != Role.SUPER_ADMIN:
            raise PermissionDeniedException("approve refunds", actor.role.value)
        refund, transaction = await self._lock_refund(refund_id)
        # 最终批准前再校验一次上限（排除自身）
        await self._check_ceiling(transaction, refund.amount, exclude_refund_id=refund.id)
        return await self._complete(refund, transaction, actor, now)

    async def reject_refund(
        self, refund_id: int, actor: Actor, reason: Optional[str] = None, *, now: Optional[datetime] = None
    ) -> RefundOutcome:
        now = now or utcnow()
        refund, transaction = await self._lock_refund(refund_id)
        required = (Role.ADMIN, Role.SUPER_ADMIN) if refund.status == RefundStatus.PENDING_AUTHORIZATION else (
            Role.SUPER_ADMIN,
        )
        if actor.role not in required:
            raise PermissionDeniedException(f"reject {refund.status.value} refunds", actor.role.value)
        refund.reject(actor.user_id, reason, now)
        refund = await self.uow.refund_repository.update(refund)
        logger.info("refund_rejected", refund_id=refund.id, actor_id=actor.user_id, reason=reason)
        self.events.append(RefundRejected(refund_id=refund.id, transaction_id=transaction.id, reason=reason))
        return RefundOutcome(refund=refund, transaction=transaction, events=self.clear_events())

    async def _complete(
        self, refund: Refund, transaction: Transaction, actor: Actor, now: datetime
    ) -> RefundOutcome:
        invoice = await self.uow.invoice_repository.get_for_update(transaction.invoice_id)
        if invoice is None:
            raise InvoiceNotFoundException(transaction.invoice_id)

        refund.approve(actor.user_id, now)
        refund = await self.uow.refund_repository.update(refund)

        external_id = f"REF-{refund.id}"
        settlement = await self.uow.transaction_repository.create(Transaction(
            id=None,
            invoice_id=invoice.id,
            gateway=INTERNAL_REFUND_GATEWAY,
            external_tx_id=external_id,
            amount=-refund.amount,
            status=TransactionStatus.SUCCESS,
            idempotency_key=external_id,
            refund_id=refund.id,
            admin_notes=refund.reason,
            created_at=now,
            updated_at=now,
        ))
        previous = invoice.apply_refund(refund.amount, now)
        await self.uow.invoice_repository.update(invoice)
        logger.info(
            "refund_completed",
            refund_id=refund.id,
            transaction_id=transaction.id,
            invoice_id=invoice.id,
            amount=refund.amount,
            previous_status=previous.value,
            status=invoice.status.value,
        )

        view = await self.ledger.load_view(invoice.id)
        self.events.append(RefundCompleted(
            refund_id=refund.id,
            amount=refund.amount,
            reason=refund.reason,
            gateway=transaction.gateway,
            payment_ref=transaction.external_tx_id,
            view=view,
            gateway_payment_id=_gateway_payment_id(transaction),
        ))
        return RefundOutcome(
            refund=refund,
            transaction=transaction,
            settlement=settlement,
            events=self.clear_events(),
        )

    async def record_gateway_refund(self, refund_id: int, refund_ref: str) -> Refund:
        """post-commit：记录渠道退款单号"""
        refund = await self._get_refund(refund_id)
        refund.gateway_refund_ref = refund_ref
        return await self.uow.refund_repository.update(refund)

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
