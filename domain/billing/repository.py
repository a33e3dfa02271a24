"""
账单仓储接口 - 定义账单数据访问的抽象接口

``get_for_update``/``lock`` variants take a row lock for the rest of the unit of work.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .entity import (
    BillableItem,
    Client,
    DomainTld,
    Invoice,
    InvoiceItem,
    Refund,
    Transaction,
)


class InvoiceRepository(ABC):
    """发票仓储"""

    @abstractmethod
    async def create(self, invoice: Invoice) -> Invoice:
        """创建发票及其明细"""
        pass

    @abstractmethod
    async def get_by_id(self, invoice_id: int) -> Optional[Invoice]:
        """根据ID获取发票（含明细）"""
        pass

    @abstractmethod
    async def get_for_update(self, invoice_id: int) -> Optional[Invoice]:
        """加行锁获取发票（含明细）"""
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: int) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def exists_by_number(self, invoice_number: str) -> bool:
        pass

    @abstractmethod
    async def update(self, invoice: Invoice) -> Invoice:
        """更新发票头字段（不含明细）"""
        pass

    @abstractmethod
    async def add_items(self, invoice_id: int, items: List[InvoiceItem]) -> List[InvoiceItem]:
        pass

    @abstractmethod
    async def update_item(self, item: InvoiceItem) -> InvoiceItem:
        pass

    @abstractmethod
    async def list_open_orderless(self, client_id: int) -> List[Invoice]:
        """客户所有未付、未删除、无订单的发票，按创建时间升序"""
        pass

    @abstractmethod
    async def find_open_referencing(
        self,
        *,
        service_id: Optional[int] = None,
        domain_id: Optional[int] = None,
        billable_item_id: Optional[int] = None,
    ) -> List[Invoice]:
        """引用指定对象的未付、未删除发票"""
        pass


class TransactionRepository(ABC):
    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        """Raises DuplicateTransactionException on a unique-key violation."""
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_for_update(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def find_existing(
        self, external_tx_id: str, idempotency_key: Optional[str] = None
    ) -> Optional[Transaction]:
        """按外部交易号或幂等键查找已记录的交易"""
        pass

    @abstractmethod
    async def update(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def list_by_invoice(self, invoice_id: int) -> List[Transaction]:
        pass


class RefundRepository(ABC):
    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        pass

    @abstractmethod
    async def get_for_update(self, refund_id: int) -> Optional[Refund]:
        """SELECT ... FOR UPDATE, always re-read from the database"""
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def sum_committed(self, transaction_id: int, exclude_refund_id: Optional[int] = None) -> Decimal:
        """Σ amount of non-rejected refunds for a transaction"""
        pass


class ClientRepository(ABC):
    @abstractmethod
    async def get_by_id(self, client_id: int) -> Optional[Client]:
        pass

    @abstractmethod
    async def lock(self, client_id: int) -> Optional[Client]:
        """加行锁获取客户，串行化同一客户的续费合并"""
        pass


class BillableItemRepository(ABC):
    @abstractmethod
    async def list_due(self, now: datetime) -> List[BillableItem]:
        pass

    @abstractmethod
    async def update(self, item: BillableItem) -> BillableItem:
        pass


class DomainTldRepository(ABC):
    @abstractmethod
    async def find_by_tlds(self, tlds: List[str]) -> List[DomainTld]:
        pass


class ExpiryNoticeRepository(ABC):
    """到期提醒记录，用于抑制重复提醒"""

    @abstractmethod
    async def exists_since(
        self,
        *,
        level: str,
        since: datetime,
        service_id: Optional[int] = None,
        domain_id: Optional[int] = None,
    ) -> bool:
        pass

    @abstractmethod
    async def record(
        self,
        *,
        client_id: int,
        level: str,
        sent_at: datetime,
        service_id: Optional[int] = None,
        domain_id: Optional[int] = None,
    ) -> None:
        pass
