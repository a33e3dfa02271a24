"""
开通领域实体 - Service / Domain / Order

Activation and renewal extension are the only ways the billing engine touches these
aggregates; every status change goes through an explicit transition table.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta

from domain.common.exceptions import DomainValidationException, InvalidStatusTransitionException
from domain.common.state import ensure_transition, transition_table
from domain.common.values import ZERO, ensure_utc


class BillingCycle(str, Enum):
    """计费周期"""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi-annually"
    ANNUALLY = "annually"
    BIENNIALLY = "biennially"
    TRIENNIALLY = "triennially"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BillingCycle":
        """Lenient parse; unknown or empty cycles fall back to monthly."""
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().lower().replace("_", "-")
        normalized = _CYCLE_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return cls.MONTHLY

    @property
    def months(self) -> int:
        return _CYCLE_MONTHS[self]

    @property
    def years(self) -> int:
        """Registration years for domain products; sub-annual cycles count as one year."""
        return max(1, self.months // 12)

    def advance(self, start: datetime, periods: int = 1) -> datetime:
        return start + relativedelta(months=self.months * periods)


_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMI_ANNUALLY: 6,
    BillingCycle.ANNUALLY: 12,
    BillingCycle.BIENNIALLY: 24,
    BillingCycle.TRIENNIALLY: 36,
}

_CYCLE_ALIASES = {
    "semiannually": "semi-annually",
    "semi-annual": "semi-annually",
    "yearly": "annually",
    "annual": "annually",
    "biennial": "biennially",
    "triennial": "triennially",
    "quarter": "quarterly",
    "month": "monthly",
}


class ServiceStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


SERVICE_TRANSITIONS = transition_table(ServiceStatus, {
    ServiceStatus.PENDING: {ServiceStatus.ACTIVE, ServiceStatus.TERMINATED},
    ServiceStatus.ACTIVE: {ServiceStatus.ACTIVE, ServiceStatus.SUSPENDED, ServiceStatus.TERMINATED},
    ServiceStatus.SUSPENDED: {ServiceStatus.ACTIVE, ServiceStatus.TERMINATED},
    ServiceStatus.TERMINATED: set(),
})


class DomainStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


DOMAIN_TRANSITIONS = transition_table(DomainStatus, {
    DomainStatus.PENDING: {DomainStatus.ACTIVE},
    DomainStatus.ACTIVE: {DomainStatus.ACTIVE, DomainStatus.EXPIRED},
    DomainStatus.EXPIRED: {DomainStatus.ACTIVE},
})


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FRAUD = "fraud"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS = transition_table(OrderStatus, {
    OrderStatus.PENDING: {OrderStatus.COMPLETED, OrderStatus.FRAUD, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.FRAUD: set(),
    OrderStatus.CANCELLED: set(),
})


def _extension_base(current: Optional[datetime], now: datetime, from_current: bool) -> datetime:
    if from_current and current is not None and current > now:
        return current
    return now


@dataclass
class Service:
    """
    托管服务

    业务规则：
    1. 只有 PENDING 的服务可以开通
    2. 续费只对 ACTIVE / SUSPENDED 生效，SUSPENDED 续费后恢复 ACTIVE
    """

    id: Optional[int]
    client_id: int
    product_name: str
    amount: Decimal
    billing_cycle: BillingCycle
    status: ServiceStatus
    next_due_date: Optional[datetime] = None
    domain: Optional[str] = None
    product_id: Optional[int] = None
    order_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.billing_cycle = BillingCycle.parse(self.billing_cycle)
        if self.amount < 0:
            raise DomainValidationException(f"服务金额不能为负: {self.amount}", field="amount")
        self.next_due_date = ensure_utc(self.next_due_date)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def is_renewable(self) -> bool:
        return self.status in (ServiceStatus.ACTIVE, ServiceStatus.SUSPENDED)

    def activate(self, now: datetime, periods: int = 1) -> None:
        # ACTIVE -> ACTIVE 只属于续费
        if self.status != ServiceStatus.PENDING:
            raise InvalidStatusTransitionException("service", self.status.value, "activate")
        self.status = ServiceStatus.ACTIVE
        self.next_due_date = self.billing_cycle.advance(now, periods)
        self.updated_at = now

    def extend(self, periods: int, now: datetime, *, from_current: bool) -> datetime:
        """Push ``next_due_date`` forward by ``periods`` billing cycles and return it."""
        if not self.is_renewable:
            raise DomainValidationException(
                f"服务 {self.id} 状态为 {self.status.value}，无法续费", field="status"
            )
        ensure_transition("service", SERVICE_TRANSITIONS, self.status, ServiceStatus.ACTIVE)
        base = _extension_base(self.next_due_date, now, from_current)
        self.next_due_date = self.billing_cycle.advance(base, periods)
        self.status = ServiceStatus.ACTIVE
        self.updated_at = now
        return self.next_due_date

    def advance_due_date(self) -> datetime:
        """Recurring generation: move the due date one cycle past its current value."""
        if self.next_due_date is None:
            raise DomainValidationException(f"服务 {self.id} 缺少 next_due_date", field="next_due_date")
        self.next_due_date = self.billing_cycle.advance(self.next_due_date)
        return self.next_due_date


@dataclass
class Domain:
    """域名"""

    id: Optional[int]
    client_id: int
    domain_name: str
    status: DomainStatus
    expiry_date: Optional[datetime] = None
    registrar: Optional[str] = None
    order_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.domain_name = (self.domain_name or "").strip().lower()
        if not self.domain_name or "." not in self.domain_name:
            raise DomainValidationException(f"无效的域名: {self.domain_name!r}", field="domain_name")
        self.expiry_date = ensure_utc(self.expiry_date)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    @property
    def is_renewable(self) -> bool:
        return self.status in (DomainStatus.ACTIVE, DomainStatus.EXPIRED)

    def activate(self, now: datetime, years: int = 1) -> None:
        if self.status != DomainStatus.PENDING:
            raise InvalidStatusTransitionException("domain", self.status.value, "activate")
        self.status = DomainStatus.ACTIVE
        self.expiry_date = now + relativedelta(years=years)
        self.updated_at = now

    def extend(self, years: int, now: datetime, *, from_current: bool) -> datetime:
        if not self.is_renewable:
            raise DomainValidationException(
                f"域名 {self.domain_name} 状态为 {self.status.value}，无法续费", field="status"
            )
        ensure_transition("domain", DOMAIN_TRANSITIONS, self.status, DomainStatus.ACTIVE)
        base = _extension_base(self.expiry_date, now, from_current)
        self.expiry_date = base + relativedelta(years=years)
        self.status = DomainStatus.ACTIVE
        self.updated_at = now
        return self.expiry_date

    def mark_expired(self, now: datetime) -> None:
        ensure_transition("domain", DOMAIN_TRANSITIONS, self.status, DomainStatus.EXPIRED)
        self.status = DomainStatus.EXPIRED
        self.updated_at = now


@dataclass
class OrderItem:
    id: Optional[int]
    order_id: Optional[int]
    product_name: str
    product_type: str
    billing_cycle: BillingCycle
    unit_price: Decimal
    total_price: Decimal
    quantity: int = 1
    product_id: Optional[int] = None
    domain_name: Optional[str] = None

    def __post_init__(self):
        self.billing_cycle = BillingCycle.parse(self.billing_cycle)

    @property
    def is_domain(self) -> bool:
        return self.product_type.lower() == "domain"


@dataclass
class Order:
    """订单聚合根，完成状态只由关联发票付清触发"""

    id: Optional[int]
    order_number: str
    client_id: int
    status: OrderStatus
    subtotal: Decimal = ZERO
    total_amount: Decimal = ZERO
    reseller_id: Optional[int] = None
    affiliate_id: Optional[int] = None
    items: list[OrderItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    def complete(self, now: datetime) -> OrderStatus:
        """标记完成，返回之前的状态"""
        previous = self.status
        ensure_transition("order", ORDER_TRANSITIONS, self.status, OrderStatus.COMPLETED)
        self.status = OrderStatus.COMPLETED
        self.updated_at = now
        return previous


@dataclass
class OrderStatusHistory:
    id: Optional[int]
    order_id: int
    old_status: Optional[OrderStatus]
    new_status: OrderStatus
    reason: Optional[str] = None
    changed_by: Optional[int] = None
    created_at: Optional[datetime] = None
