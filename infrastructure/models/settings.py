"""
系统设置与到期提醒记录
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from datetime import datetime, timezone

from .base import Base


class SystemSettingModel(Base):
    __tablename__ = "system_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, comment="taxRate/taxName/currency ...")
    value = Column(Text, nullable=True)


class ExpiryNoticeModel(Base):
    __tablename__ = "expiry_notices"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=True)
    level = Column(String(20), nullable=False, comment="提醒级别，如 7d/30d")
    sent_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_expiry_notices_service_level", "service_id", "level", "sent_at"),
        Index("ix_expiry_notices_domain_level", "domain_id", "level", "sent_at"),
    )


class WebhookSubscriptionModel(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    url = Column(String(500), nullable=False)
    secret = Column(String(255), nullable=False, comment="HMAC-SHA256 签名密钥")
    events = Column(Text, nullable=False, default="*", comment="逗号分隔的事件名，* 表示全部")
    is_active = Column(Boolean, nullable=False, default=True, index=True)
