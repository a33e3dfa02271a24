"""
客户 / 计费项 / TLD 价格 / 到期提醒 仓储实现
"""
from datetime import datetime
from typing import List, Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import exists, or_, select

from domain.billing.entity import (
    BillableItem,
    BillableItemStatus,
    Client,
    DomainTld,
)
from domain.billing.repository import (
    BillableItemRepository,
    ClientRepository,
    DomainTldRepository,
    ExpiryNoticeRepository,
)
from infrastructure.models.billing import BillableItemModel, ClientModel, DomainTldModel
from infrastructure.models.settings import ExpiryNoticeModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyClientRepository(ClientRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ClientModel) -> Client:
        return Client(
            id=model.id,
            user_id=model.user_id,
            email=model.email,
            name=model.name,
            tax_exempt=bool(model.tax_exempt),
        )

    async def get_by_id(self, client_id: int) -> Optional[Client]:
        db_client = await self.session.get(ClientModel, client_id)
        return self._to_entity(db_client) if db_client else None

    async def lock(self, client_id: int) -> Optional[Client]:
        result = await self.session.execute(
            select(ClientModel).where(ClientModel.id == client_id).with_for_update()
        )
        db_client = result.scalar_one_or_none()
        return self._to_entity(db_client) if db_client else None


class SQLAlchemyBillableItemRepository(BillableItemRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: BillableItemModel) -> BillableItem:
        return BillableItem(
            id=model.id,
            client_id=model.client_id,
            description=model.description,
            amount=Decimal(str(model.amount)),
            quantity=model.quantity,
            status=BillableItemStatus(model.status),
            next_invoice_date=model.next_invoice_date,
            recurring_frequency=model.recurring_frequency,
        )

    async def list_due(self, now: datetime) -> List[BillableItem]:
        """未开票的一次性项 + 到期的周期项"""
        result = await self.session.execute(
            select(BillableItemModel)
            .where(
                BillableItemModel.status == BillableItemStatus.UNINVOICED.value,
                or_(
                    BillableItemModel.next_invoice_date.is_(None),
                    BillableItemModel.next_invoice_date <= now,
                ),
            )
            .order_by(BillableItemModel.client_id, BillableItemModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, item: BillableItem) -> BillableItem:
        db_item = await self.session.get(BillableItemModel, item.id)
        if not db_item:
            raise ValueError(f"Billable item with id {item.id} not found")
        db_item.status = item.status.value
        db_item.next_invoice_date = item.next_invoice_date
        await self.session.flush()
        return self._to_entity(db_item)


class SQLAlchemyDomainTldRepository(DomainTldRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_tlds(self, tlds: List[str]) -> List[DomainTld]:
        if not tlds:
            return []
        result = await self.session.execute(
            select(DomainTldModel).where(DomainTldModel.tld.in_([t.lower() for t in tlds]))
        )
        return [
            DomainTld(tld=m.tld, renewal_price=Decimal(str(m.renewal_price)))
            for m in result.scalars().all()
        ]


class SQLAlchemyExpiryNoticeRepository(ExpiryNoticeRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists_since(
        self,
        *,
        level: str,
        since: datetime,
        service_id: Optional[int] = None,
        domain_id: Optional[int] = None,
    ) -> bool:
        conditions = [ExpiryNoticeModel.level == level, ExpiryNoticeModel.sent_at >= since]
        if service_id is not None:
            conditions.append(ExpiryNoticeModel.service_id == service_id)
        if domain_id is not None:
            conditions.append(ExpiryNoticeModel.domain_id == domain_id)
        result = await self.session.execute(select(exists().where(*conditions)))
        return bool(result.scalar())

    async def record(
        self,
        *,
        client_id: int,
        level: str,
        sent_at: datetime,
        service_id: Optional[int] = None,
        domain_id: Optional[int] = None,
    ) -> None:
        self.session.add(ExpiryNoticeModel(
            client_id=client_id,
            service_id=service_id,
            domain_id=domain_id,
            level=level,
            sent_at=sent_at,
        ))
        await self.session.flush()
        logger.debug(
            "expiry_notice_recorded",
            client_id=client_id,
            service_id=service_id,
            domain_id=domain_id,
            level=level,
        )
