"""Infrastructure models package exports."""
from .base import Base, metadata
from .billing import (
    BillableItemModel,
    ClientModel,
    DomainTldModel,
    InvoiceItemModel,
    InvoiceModel,
    RefundModel,
    TransactionModel,
)
from .commission import (
    InvestorCommissionModel,
    InvestorModel,
    PartnerCommissionModel,
    PartnerModel,
)
from .provisioning import (
    DomainModel,
    OrderItemModel,
    OrderModel,
    OrderStatusHistoryModel,
    ServiceModel,
)
from .settings import ExpiryNoticeModel, SystemSettingModel, WebhookSubscriptionModel

__all__ = [
    "Base",
    "metadata",
    "ClientModel",
    "InvoiceModel",
    "InvoiceItemModel",
    "TransactionModel",
    "RefundModel",
    "BillableItemModel",
    "DomainTldModel",
    "ServiceModel",
    "DomainModel",
    "OrderModel",
    "OrderItemModel",
    "OrderStatusHistoryModel",
    "InvestorModel",
    "InvestorCommissionModel",
    "PartnerModel",
    "PartnerCommissionModel",
    "SystemSettingModel",
    "ExpiryNoticeModel",
    "WebhookSubscriptionModel",
]
