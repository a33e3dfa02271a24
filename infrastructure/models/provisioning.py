"""
开通数据库模型 - 服务 / 域名 / 订单
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceModel(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    product_id = Column(Integer, nullable=True)
    product_name = Column(String(255), nullable=False)
    domain = Column(String(255), nullable=True)
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="每个计费周期的金额")
    billing_cycle = Column(String(20), nullable=False, default="monthly")
    status = Column(String(20), nullable=False, default="pending", index=True)
    next_due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class DomainModel(Base):
    __tablename__ = "domains"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    domain_name = Column(String(255), unique=True, nullable=False)
    registrar = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    expiry_date = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    subtotal = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    total_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    reseller_id = Column(Integer, ForeignKey("partners.id"), nullable=True)
    affiliate_id = Column(Integer, ForeignKey("partners.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    items = relationship(
        "OrderItemModel",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItemModel.id",
    )


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=True)
    product_name = Column(String(255), nullable=False)
    product_type = Column(String(30), nullable=False, comment="hosting/vps/domain/...")
    billing_cycle = Column(String(20), nullable=False, default="monthly")
    domain_name = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(precision=15, scale=2), nullable=False)
    total_price = Column(Numeric(precision=15, scale=2), nullable=False)


class OrderStatusHistoryModel(Base):
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
