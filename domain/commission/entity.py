"""
佣金领域实体 - 投资人 / 经销商 / 推广员
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.common.values import ZERO, ensure_utc, to_money


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PartnerKind(str, Enum):
    RESELLER = "reseller"
    AFFILIATE = "affiliate"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


@dataclass
class Investor:
    """
    投资人

    每张付清的发票按小计抽成（百分比或固定金额），直接计入钱包余额。
    """

    id: Optional[int]
    name: str
    commission_type: CommissionType
    commission_value: Decimal
    is_active: bool = True
    total_earnings: Decimal = ZERO
    wallet_balance: Decimal = ZERO

    def __post_init__(self):
        if self.commission_value < 0:
            raise DomainValidationException(
                f"佣金比例不能为负: {self.commission_value}", field="commission_value"
            )
        self.total_earnings = to_money(self.total_earnings)
        self.wallet_balance = to_money(self.wallet_balance)

    def commission_for(self, invoice_subtotal: Decimal) -> Decimal:
        if self.commission_type == CommissionType.PERCENTAGE:
            return to_money(invoice_subtotal * self.commission_value / Decimal(100))
        return to_money(self.commission_value)

    def credit(self, amount: Decimal) -> None:
        self.total_earnings += amount
        self.wallet_balance += amount


@dataclass
class InvestorCommission:
    id: Optional[int]
    investor_id: int
    invoice_id: int
    invoice_amount: Decimal
    commission_amount: Decimal
    status: CommissionStatus = CommissionStatus.PAID
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)


@dataclass
class Partner:
    """经销商或推广员，佣金按订单小计计提，进入待结算余额"""

    id: Optional[int]
    kind: PartnerKind
    name: str
    commission_rate: Decimal
    total_earnings: Decimal = ZERO
    pending_earnings: Decimal = ZERO

    def __post_init__(self):
        self.total_earnings = to_money(self.total_earnings)
        self.pending_earnings = to_money(self.pending_earnings)

    def commission_for(self, order_amount: Decimal) -> Decimal:
        return to_money(order_amount * self.commission_rate / Decimal(100))

    def accrue(self, amount: Decimal) -> None:
        self.total_earnings += amount
        self.pending_earnings += amount


@dataclass
class PartnerCommission:
    id: Optional[int]
    partner_id: int
    order_id: int
    client_id: int
    order_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: CommissionStatus = CommissionStatus.PENDING
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = ensure_utc(self.created_at)
