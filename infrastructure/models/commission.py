"""
佣金数据库模型

(investor_id, invoice_id) 与 (partner_id, order_id) 唯一，防止重复计提
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvestorModel(Base):
    __tablename__ = "investors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    commission_type = Column(String(20), nullable=False, default="percentage", comment="percentage/fixed")
    commission_value = Column(Numeric(precision=15, scale=2), nullable=False)
    total_earnings = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    wallet_balance = Column(Numeric(precision=15, scale=2), nullable=False, default=0)


class InvestorCommissionModel(Base):
    __tablename__ = "investor_commissions"

    id = Column(Integer, primary_key=True, index=True)
    investor_id = Column(Integer, ForeignKey("investors.id"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    invoice_amount = Column(Numeric(precision=15, scale=2), nullable=False)
    commission_amount = Column(Numeric(precision=15, scale=2), nullable=False)
    status = Column(String(20), nullable=False, default="paid")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("investor_id", "invoice_id", name="uq_investor_commission_invoice"),
    )


class PartnerModel(Base):
    __tablename__ = "partners"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(20), nullable=False, comment="reseller/affiliate")
    name = Column(String(255), nullable=False)
    commission_rate = Column(Numeric(precision=5, scale=2), nullable=False, comment="百分比")
    total_earnings = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    pending_earnings = Column(Numeric(precision=15, scale=2), nullable=False, default=0)


class PartnerCommissionModel(Base):
    __tablename__ = "partner_commissions"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    order_amount = Column(Numeric(precision=15, scale=2), nullable=False)
    commission_rate = Column(Numeric(precision=5, scale=2), nullable=False)
    commission_amount = Column(Numeric(precision=15, scale=2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("partner_id", "order_id", name="uq_partner_commission_order"),
    )
