"""
账单数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, JSON,
    Numeric, String, Text,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClientModel(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True, comment="登录用户ID")
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    tax_exempt = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class InvoiceModel(Base):
    """
    发票数据库模型

    amount_paid <= total_amount 由检查约束兜底
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(50), unique=True, nullable=False, comment="发票号 INV-YYYYMMDD-NNNN")
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    subtotal = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    tax_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    total_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    amount_paid = Column(Numeric(precision=15, scale=2), nullable=False, default=0)

    status = Column(
        String(30), nullable=False, default="unpaid", index=True,
        comment="状态: unpaid/partially_paid/paid/refunded",
    )
    due_date = Column(DateTime(timezone=True), nullable=False)
    paid_date = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(String(50), nullable=True, comment="最近一次付款渠道")
    notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True, comment="审计备注（合并记录等）")

    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    items = relationship(
        "InvoiceItemModel",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceItemModel.id",
    )

    __table_args__ = (
        CheckConstraint("amount_paid <= total_amount", name="paid_le_total"),
        CheckConstraint("amount_paid >= 0", name="paid_non_negative"),
        Index("ix_invoices_client_open", "client_id", "status", "is_deleted"),
    )


class InvoiceItemModel(Base):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(precision=15, scale=2), nullable=False)
    total_amount = Column(Numeric(precision=15, scale=2), nullable=False)

    service_id = Column(Integer, ForeignKey("services.id"), nullable=True, index=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=True, index=True)
    billable_item_id = Column(Integer, ForeignKey("billable_items.id"), nullable=True, index=True)
    # "metadata" 与 Declarative 保留属性冲突，属性名改为 renewal_metadata
    renewal_metadata = Column("metadata", JSON, nullable=True, comment='{"kind": ..., "periodCount": n}')
    provisioned_at = Column(DateTime(timezone=True), nullable=True, comment="开通/续期已执行时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    invoice = relationship("InvoiceModel", back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "service_id IS NULL OR domain_id IS NULL",
            name="single_target",
        ),
    )


class TransactionModel(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    gateway = Column(String(50), nullable=False, index=True)
    external_tx_id = Column(String(200), unique=True, nullable=False, comment="网关交易号")
    idempotency_key = Column(String(128), unique=True, nullable=False)
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款结算为负数")
    status = Column(String(20), nullable=False, default="pending", index=True)
    gateway_response = Column(Text, nullable=True)
    refund_id = Column(Integer, nullable=True, index=True, comment="退款结算交易对应的退款单")
    admin_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class RefundModel(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)
    amount = Column(Numeric(precision=15, scale=2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(
        String(30), nullable=False, index=True,
        comment="pending_authorization/pending_approval/completed/rejected",
    )
    requested_by = Column(Integer, nullable=False)
    authorized_by = Column(Integer, nullable=True)
    approved_by = Column(Integer, nullable=True)
    rejected_by = Column(Integer, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    gateway_refund_ref = Column(String(200), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
    )


class BillableItemModel(Base):
    __tablename__ = "billable_items"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    amount = Column(Numeric(precision=15, scale=2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="uninvoiced", index=True)
    next_invoice_date = Column(DateTime(timezone=True), nullable=True, index=True)
    recurring_frequency = Column(String(20), nullable=True, comment="为空表示一次性")


class DomainTldModel(Base):
    __tablename__ = "domain_tlds"

    id = Column(Integer, primary_key=True, index=True)
    tld = Column(String(63), unique=True, nullable=False, comment="不带前导点，如 co.uk")
    renewal_price = Column(Numeric(precision=15, scale=2), nullable=False)
