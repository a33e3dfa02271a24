"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.billing.repository import (
    BillableItemRepository,
    ClientRepository,
    DomainTldRepository,
    ExpiryNoticeRepository,
    InvoiceRepository,
    RefundRepository,
    TransactionRepository,
)
from domain.commission.repository import CommissionRepository
from domain.provisioning.repository import DomainRepository, OrderRepository, ServiceRepository


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象：正常退出自动提交，异常退出回滚"""

    invoice_repository: InvoiceRepository
    transaction_repository: TransactionRepository
    refund_repository: RefundRepository
    client_repository: ClientRepository
    billable_item_repository: BillableItemRepository
    tld_repository: DomainTldRepository
    expiry_notice_repository: ExpiryNoticeRepository
    service_repository: ServiceRepository
    domain_repository: DomainRepository
    order_repository: OrderRepository
    commission_repository: CommissionRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
        ...
