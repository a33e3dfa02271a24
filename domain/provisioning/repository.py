"""
开通仓储接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import Domain, Order, OrderStatusHistory, Service


class ServiceRepository(ABC):
    @abstractmethod
    async def get_by_id(self, service_id: int) -> Optional[Service]:
        pass

    @abstractmethod
    async def get_for_update(self, service_id: int) -> Optional[Service]:
        pass

    @abstractmethod
    async def update(self, service: Service) -> Service:
        pass

    @abstractmethod
    async def list_pending_for_order(self, order_id: int) -> List[Service]:
        """订单下单时创建的待开通服务"""
        pass

    @abstractmethod
    async def list_due(self, now: datetime) -> List[Service]:
        """ACTIVE 且 next_due_date <= now"""
        pass

    @abstractmethod
    async def list_active_due_between(self, start: datetime, end: datetime) -> List[Service]:
        """ACTIVE 且 start < next_due_date <= end"""
        pass


class DomainRepository(ABC):
    @abstractmethod
    async def get_by_id(self, domain_id: int) -> Optional[Domain]:
        pass

    @abstractmethod
    async def get_for_update(self, domain_id: int) -> Optional[Domain]:
        pass

    @abstractmethod
    async def get_by_name(self, domain_name: str) -> Optional[Domain]:
        pass

    @abstractmethod
    async def create(self, domain: Domain) -> Domain:
        pass

    @abstractmethod
    async def update(self, domain: Domain) -> Domain:
        pass

    @abstractmethod
    async def list_active_expiring_between(self, start: datetime, end: datetime) -> List[Domain]:
        pass

    @abstractmethod
    async def list_active_expired(self, now: datetime) -> List[Domain]:
        pass


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: int) -> Optional[Order]:
        """获取订单（含明细）"""
        pass

    @abstractmethod
    async def get_for_update(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def update(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def add_status_history(self, history: OrderStatusHistory) -> OrderStatusHistory:
        pass
