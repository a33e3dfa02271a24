"""
佣金仓储接口
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .entity import Investor, InvestorCommission, Partner, PartnerCommission


class CommissionRepository(ABC):
    @abstractmethod
    async def list_active_investors(self) -> List[Investor]:
        pass

    @abstractmethod
    async def update_investor(self, investor: Investor) -> Investor:
        pass

    @abstractmethod
    async def investor_commission_exists(self, investor_id: int, invoice_id: int) -> bool:
        pass

    @abstractmethod
    async def create_investor_commission(self, commission: InvestorCommission) -> InvestorCommission:
        pass

    @abstractmethod
    async def get_partner(self, partner_id: int) -> Optional[Partner]:
        pass

    @abstractmethod
    async def update_partner(self, partner: Partner) -> Partner:
        pass

    @abstractmethod
    async def partner_commission_exists(self, partner_id: int, order_id: int) -> bool:
        pass

    @abstractmethod
    async def create_partner_commission(self, commission: PartnerCommission) -> PartnerCommission:
        pass
