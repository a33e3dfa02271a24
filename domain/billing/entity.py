"""
账单领域实体 - 发票聚合根、交易、退款

业务规则：
1. 所有金额使用 Decimal，精确到分
2. amount_paid 永远不超过 total_amount
3. 状态转换必须遵循显式的状态表
4. 发票只软删除
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import (
    DomainValidationException,
    InvoiceAlreadyPaidException,
    InvoiceNotPayableException,
    PaymentExceedsBalanceException,
)
from domain.common.state import ensure_transition, transition_table
from domain.common.values import ZERO, ensure_utc, to_money
from domain.provisioning.entity import BillingCycle


class InvoiceStatus(str, Enum):
    """发票状态"""
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    REFUNDED = "refunded"


INVOICE_TRANSITIONS = transition_table(InvoiceStatus, {
    InvoiceStatus.UNPAID: {InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.PAID},
    InvoiceStatus.PARTIALLY_PAID: {
        InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.PAID, InvoiceStatus.REFUNDED,
    },
    # PAID -> PARTIALLY_PAID 只发生在部分退款
    InvoiceStatus.PAID: {InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.REFUNDED},
    InvoiceStatus.REFUNDED: set(),
})


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


TRANSACTION_TRANSITIONS = transition_table(TransactionStatus, {
    TransactionStatus.PENDING: {TransactionStatus.SUCCESS, TransactionStatus.FAILED},
    TransactionStatus.SUCCESS: set(),
    TransactionStatus.FAILED: set(),
})


class RefundStatus(str, Enum):
    PENDING_AUTHORIZATION = "pending_authorization"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    REJECTED = "rejected"


REFUND_TRANSITIONS = transition_table(RefundStatus, {
    RefundStatus.PENDING_AUTHORIZATION: {RefundStatus.PENDING_APPROVAL, RefundStatus.REJECTED},
    RefundStatus.PENDING_APPROVAL: {RefundStatus.COMPLETED, RefundStatus.REJECTED},
    RefundStatus.COMPLETED: set(),
    RefundStatus.REJECTED: set(),
})


class RenewalKind(str, Enum):
    NEW_SERVICE = "new_service"
    SERVICE_RENEWAL = "service_renewal"
    NEW_DOMAIN = "new_domain"
    DOMAIN_RENEWAL = "domain_renewal"


@dataclass(frozen=True)
class RenewalMetadata:
    """
    发票行的续费标签（封闭的标签联合）

    Serialized form is ``{"kind": ..., "periodCount": n}``; it is validated here and copied
    verbatim when invoices are merged.
    """

    kind: RenewalKind
    period_count: int = 1

    def __post_init__(self):
        if not isinstance(self.kind, RenewalKind):
            try:
                object.__setattr__(self, "kind", RenewalKind(self.kind))
            except ValueError:
                raise DomainValidationException(
                    f"未知的续费类型: {self.kind!r}", field="metadata.kind"
                ) from None
        if isinstance(self.period_count, bool) or not isinstance(self.period_count, int):
            raise DomainValidationException(
                f"periodCount 必须为整数: {self.period_count!r}", field="metadata.periodCount"
            )
        if self.period_count < 1:
            raise DomainValidationException(
                f"periodCount 必须 >= 1: {self.period_count}", field="metadata.periodCount"
            )

    @property
    def is_renewal(self) -> bool:
        return self.kind in (RenewalKind.SERVICE_RENEWAL, RenewalKind.DOMAIN_RENEWAL)

    @property
    def targets_service(self) -> bool:
        return self.kind in (RenewalKind.NEW_SERVICE, RenewalKind.SERVICE_RENEWAL)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "periodCount": self.period_count}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["RenewalMetadata"]:
        if data is None:
            return None
        if not isinstance(data, dict) or "kind" not in data:
            raise DomainValidationException(f"无效的续费元数据: {data!r}", field="metadata")
        unknown = set(data) - {"kind", "periodCount"}
        if unknown:
            raise DomainValidationException(
                f"续费元数据包含未知字段: {sorted(unknown)}", field="metadata"
            )
        return cls(kind=data["kind"], period_count=data.get("periodCount", 1))


@dataclass
class InvoiceItem:
    """
    发票行

    A line references at most one renewable target (service or domain). ``provisioned_at``
    records that its activation/extension has been applied.
    """

    id: Optional[int]
    invoice_id: Optional[int]
    description: str
    unit_price: Decimal
    total_amount: Decimal
    quantity: int = 1
    service_id: Optional[int] = None
    domain_id: Optional[int] = None
    billable_item_id: Optional[int] = None
    metadata: Optional[RenewalMetadata] = None
    provisioned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.service_id is not None and self.domain_id is not None:
            raise DomainValidationException(
                "发票行不能同时关联服务和域名", field="service_id"
            )
        if self.quantity < 1:
            raise DomainValidationException(f"数量必须 >= 1: {self.quantity}", field="quantity")
        if isinstance(self.metadata, dict):
            self.metadata = RenewalMetadata.from_dict(self.metadata)
        if self.metadata is not None:
            if self.metadata.targets_service and self.domain_id is not None:
                raise DomainValidationException(
                    f"{self.metadata.kind.value} 行不能关联域名", field="metadata"
                )
            if not self.metadata.targets_service and self.service_id is not None:
                raise DomainValidationException(
                    f"{self.metadata.kind.value} 行不能关联服务", field="metadata"
                )
        self.unit_price = to_money(self.unit_price)
        self.total_amount = to_money(self.total_amount)
        self.provisioned_at = ensure_utc(self.provisioned_at)
        self.created_at = ensure_utc(self.created_at)

    @property
    def target_key(self) -> Optional[tuple[str, int]]:
        if self.service_id is not None:
            return ("service", self.service_id)
        if self.domain_id is not None:
            return ("domain", self.domain_id)
        return None

    def copy_for(self, invoice_id: Optional[int]) -> "InvoiceItem":
        """Copy this line onto another invoice, metadata carried over unchanged."""
        return InvoiceItem(
            id=None,
            invoice_id=invoice_id,
            description=self.description,
            unit_price=self.unit_price,
            total_amount=self.total_amount,
            quantity=self.quantity,
            service_id=self.service_id,
            domain_id=self.domain_id,
            billable_item_id=self.billable_item_id,
            metadata=self.metadata,
        )

    def mark_provisioned(self, now: datetime) -> None:
        self.provisioned_at = now


@dataclass
class Invoice:
    """
    发票聚合根

    业务规则：
    1. 付款不能让 amount_paid 超过 total_amount
    2. PAID / REFUNDED 的发票不再接受付款
    3. 只有未付款的发票可以软删除（合并）
    """

    id: Optional[int]
    invoice_number: str
    client_id: int
    status: InvoiceStatus
    due_date: datetime
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    amount_paid: Decimal = ZERO
    order_id: Optional[int] = None
    paid_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: list[InvoiceItem] = field(default_factory=list)

    def __post_init__(self):
        self.subtotal = to_money(self.subtotal)
        self.tax_amount = to_money(self.tax_amount)
        self.total_amount = to_money(self.total_amount)
        self.amount_paid = to_money(self.amount_paid)
        self.due_date = ensure_utc(self.due_date)
        self.paid_date = ensure_utc(self.paid_date)
        self.deleted_at = ensure_utc(self.deleted_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def outstanding(self) -> Decimal:
        return self.total_amount - self.amount_paid

    @property
    def is_open_renewal_hub(self) -> bool:
        return self.status == InvoiceStatus.UNPAID and not self.is_deleted and self.order_id is None

    def target_keys(self) -> set[tuple[str, int]]:
        return {item.target_key for item in self.items if item.target_key is not None}

    def _transition(self, target: InvoiceStatus) -> None:
        ensure_transition("invoice", INVOICE_TRANSITIONS, self.status, target)
        self.status = target

    def ensure_payable(self, amount: Decimal) -> Decimal:
        """校验一笔付款是否可以记入，返回规整后的金额"""
        amount = to_money(amount)
        if amount <= 0:
            raise DomainValidationException(f"付款金额必须大于0: {amount}", field="amount")
        if self.is_deleted:
            raise InvoiceNotPayableException(self.id, "invoice was merged or deleted")
        if self.status in (InvoiceStatus.PAID, InvoiceStatus.REFUNDED):
            raise InvoiceAlreadyPaidException(self.id, self.status.value)
        if amount > self.outstanding:
            raise PaymentExceedsBalanceException(amount, self.outstanding)
        return amount

    def apply_payment(self, amount: Decimal, gateway: str, now: datetime) -> InvoiceStatus:
        """
        记录一笔成功付款，返回付款前的状态

        Validation happens before any field is touched.
        """
        amount = self.ensure_payable(amount)
        previous = self.status
        new_paid = self.amount_paid + amount
        target = InvoiceStatus.PAID if new_paid >= self.total_amount else InvoiceStatus.PARTIALLY_PAID
        self._transition(target)
        self.amount_paid = new_paid
        self.payment_method = gateway
        if target == InvoiceStatus.PAID:
            self.paid_date = now
        self.updated_at = now
        return previous

    def apply_refund(self, amount: Decimal, now: datetime) -> InvoiceStatus:
        """扣减已付金额并重新计算状态，返回退款前的状态"""
        amount = to_money(amount)
        if amount <= 0:
            raise DomainValidationException(f"退款金额必须大于0: {amount}", field="amount")
        previous = self.status
        new_paid = self.amount_paid - amount
        if new_paid <= 0:
            self._transition(InvoiceStatus.REFUNDED)
            new_paid = ZERO
        elif new_paid < self.total_amount:
            self._transition(InvoiceStatus.PARTIALLY_PAID)
        self.amount_paid = new_paid
        self.updated_at = now
        return previous

    def set_totals(self, subtotal: Decimal, tax_amount: Decimal) -> None:
        subtotal = to_money(subtotal)
        tax_amount = to_money(tax_amount)
        total = subtotal + tax_amount
        if self.amount_paid > total:
            raise DomainValidationException(
                f"发票总额 {total} 低于已付金额 {self.amount_paid}", field="total_amount"
            )
        self.subtotal = subtotal
        self.tax_amount = tax_amount
        self.total_amount = total

    def extend_due_date(self, candidate: Optional[datetime]) -> bool:
        """Move the due date to ``candidate`` only when it is later."""
        candidate = ensure_utc(candidate)
        if candidate is None or candidate <= self.due_date:
            return False
        self.due_date = candidate
        return True

    def append_admin_note(self, note: str) -> None:
        self.admin_notes = f"{self.admin_notes}\n{note}" if self.admin_notes else note

    def soft_delete(self, note: str, now: datetime) -> None:
        if self.is_deleted:
            return
        if self.amount_paid > 0 or self.status != InvoiceStatus.UNPAID:
            raise DomainValidationException(
                f"发票 {self.invoice_number} 已有付款，不能删除", field="status"
            )
        self.is_deleted = True
        self.deleted_at = now
        self.updated_at = now
        self.append_admin_note(note)


@dataclass
class Transaction:
    """
    交易记录

    Amount is negative for refund settlements. ``external_tx_id`` and ``idempotency_key``
    are both unique.
    """

    id: Optional[int]
    invoice_id: int
    gateway: str
    external_tx_id: str
    amount: Decimal
    status: TransactionStatus
    idempotency_key: str
    gateway_response: Optional[str] = None
    refund_id: Optional[int] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount == 0:
            raise DomainValidationException("交易金额不能为0", field="amount")
        if not self.external_tx_id:
            raise DomainValidationException("缺少外部交易号", field="external_tx_id")
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def is_refundable(self) -> bool:
        return self.status == TransactionStatus.SUCCESS and self.amount > 0 and self.refund_id is None

    def mark_succeeded(self, now: datetime) -> None:
        ensure_transition("transaction", TRANSACTION_TRANSITIONS, self.status, TransactionStatus.SUCCESS)
        self.status = TransactionStatus.SUCCESS
        self.updated_at = now

    def mark_failed(self, reason: Optional[str], now: datetime) -> None:
        ensure_transition("transaction", TRANSACTION_TRANSITIONS, self.status, TransactionStatus.FAILED)
        self.status = TransactionStatus.FAILED
        if reason:
            self.admin_notes = reason
        self.updated_at = now


@dataclass
class Refund:
    """退款申请：两步审批"""

    id: Optional[int]
    transaction_id: int
    amount: Decimal
    reason: str
    status: RefundStatus
    requested_by: int
    authorized_by: Optional[int] = None
    approved_by: Optional[int] = None
    rejected_by: Optional[int] = None
    rejection_reason: Optional[str] = None
    gateway_refund_ref: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise DomainValidationException(f"退款金额必须大于0: {self.amount}", field="amount")
        if not (self.reason or "").strip():
            raise DomainValidationException("退款原因不能为空", field="reason")
        self.completed_at = ensure_utc(self.completed_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def counts_against_ceiling(self) -> bool:
        return self.status != RefundStatus.REJECTED

    def _transition(self, target: RefundStatus, now: datetime) -> None:
        ensure_transition("refund", REFUND_TRANSITIONS, self.status, target)
        self.status = target
        self.updated_at = now

    def authorize(self, actor_id: int, now: datetime) -> None:
        self._transition(RefundStatus.PENDING_APPROVAL, now)
        self.authorized_by = actor_id

    def approve(self, actor_id: int, now: datetime) -> None:
        self._transition(RefundStatus.COMPLETED, now)
        self.approved_by = actor_id
        self.completed_at = now

    def reject(self, actor_id: int, reason: Optional[str], now: datetime) -> None:
        self._transition(RefundStatus.REJECTED, now)
        self.rejected_by = actor_id
        self.rejection_reason = reason


@dataclass
class Client:
    id: int
    user_id: Optional[int]
    email: str
    name: str
    tax_exempt: bool = False


class BillableItemStatus(str, Enum):
    UNINVOICED = "uninvoiced"
    INVOICED = "invoiced"


@dataclass
class BillableItem:
    """手工计费项（一次性或周期性）"""

    id: Optional[int]
    client_id: int
    description: str
    amount: Decimal
    status: BillableItemStatus = BillableItemStatus.UNINVOICED
    quantity: int = 1
    next_invoice_date: Optional[datetime] = None
    recurring_frequency: Optional[BillingCycle] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.recurring_frequency is not None:
            self.recurring_frequency = BillingCycle.parse(self.recurring_frequency)
        self.next_invoice_date = ensure_utc(self.next_invoice_date)

    @property
    def line_total(self) -> Decimal:
        return to_money(self.amount * self.quantity)

    def mark_invoiced(self) -> None:
        """周期项顺延一个周期，一次性项标记为已开票"""
        if self.recurring_frequency is None:
            self.status = BillableItemStatus.INVOICED
            return
        if self.next_invoice_date is not None:
            self.next_invoice_date = self.recurring_frequency.advance(self.next_invoice_date)


@dataclass
class DomainTld:
    tld: str
    renewal_price: Decimal

    def __post_init__(self):
        self.tld = self.tld.strip().lower().lstrip(".")
        self.renewal_price = to_money(self.renewal_price)


@dataclass
class InvoiceView:
    """发票 + 明细 + 客户，供通知/PDF 使用"""

    invoice: Invoice
    client: Client

    @property
    def items(self) -> list[InvoiceItem]:
        return self.invoice.items
