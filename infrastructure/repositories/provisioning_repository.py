"""
开通仓储实现 - 服务 / 域名 / 订单
"""
from datetime import datetime
from typing import List, Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import ConcurrencyConflictException, OrderNotFoundException
from domain.provisioning.entity import (
    Domain,
    DomainStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    Service,
    ServiceStatus,
)
from domain.provisioning.repository import DomainRepository, OrderRepository, ServiceRepository
from infrastructure.models.provisioning import (
    DomainModel,
    OrderModel,
    OrderStatusHistoryModel,
    ServiceModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyServiceRepository(ServiceRepository):
    """服务仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ServiceModel) -> Service:
        return Service(
            id=model.id,
            client_id=model.client_id,
            order_id=model.order_id,
            product_id=model.product_id,
            product_name=model.product_name,
            domain=model.domain,
            amount=Decimal(str(model.amount)),
            billing_cycle=model.billing_cycle,
            status=ServiceStatus(model.status),
            next_due_date=model.next_due_date,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, service_id: int) -> Optional[Service]:
        db_service = await self.session.get(ServiceModel, service_id)
        return self._to_entity(db_service) if db_service else None

    async def get_for_update(self, service_id: int) -> Optional[Service]:
        result = await self.session.execute(
            select(ServiceModel)
            .where(ServiceModel.id == service_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_service = result.scalar_one_or_none()
        return self._to_entity(db_service) if db_service else None

    async def update(self, service: Service) -> Service:
        db_service = await self.session.get(ServiceModel, service.id)
        if not db_service:
            raise ValueError(f"Service with id {service.id} not found")

        db_service.status = service.status.value
        db_service.next_due_date = service.next_due_date
        db_service.amount = service.amount
        db_service.billing_cycle = service.billing_cycle.value

        await self.session.flush()
        logger.info(
            "service_updated",
            service_id=db_service.id,
            status=db_service.status,
            next_due_date=db_service.next_due_date,
        )
        return self._to_entity(db_service)

    async def list_pending_for_order(self, order_id: int) -> List[Service]:
        result = await self.session.execute(
            select(ServiceModel)
            .where(
                ServiceModel.order_id == order_id,
                ServiceModel.status == ServiceStatus.PENDING.value,
            )
            .order_by(ServiceModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_due(self, now: datetime) -> List[Service]:
        result = await self.session.execute(
            select(ServiceModel)
            .where(
                ServiceModel.status == ServiceStatus.ACTIVE.value,
                ServiceModel.next_due_date.is_not(None),
                ServiceModel.next_due_date <= now,
            )
            .order_by(ServiceModel.next_due_date, ServiceModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_active_due_between(self, start: datetime, end: datetime) -> List[Service]:
        result = await self.session.execute(
            select(ServiceModel)
            .where(
                ServiceModel.status == ServiceStatus.ACTIVE.value,
                ServiceModel.next_due_date > start,
                ServiceModel.next_due_date <= end,
            )
            .order_by(ServiceModel.client_id, ServiceModel.next_due_date)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyDomainRepository(DomainRepository):
    """域名仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: DomainModel) -> Domain:
        return Domain(
            id=model.id,
            client_id=model.client_id,
            order_id=model.order_id,
            domain_name=model.domain_name,
            registrar=model.registrar,
            status=DomainStatus(model.status),
            expiry_date=model.expiry_date,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, domain_id: int) -> Optional[Domain]:
        db_domain = await self.session.get(DomainModel, domain_id)
        return self._to_entity(db_domain) if db_domain else None

    async def get_for_update(self, domain_id: int) -> Optional[Domain]:
        result = await self.session.execute(
            select(DomainModel)
            .where(DomainModel.id == domain_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_domain = result.scalar_one_or_none()
        return self._to_entity(db_domain) if db_domain else None

    async def get_by_name(self, domain_name: str) -> Optional[Domain]:
        result = await self.session.execute(
            select(DomainModel).where(DomainModel.domain_name == domain_name.strip().lower())
        )
        db_domain = result.scalar_one_or_none()
        return self._to_entity(db_domain) if db_domain else None

    async def create(self, domain: Domain) -> Domain:
        try:
            db_domain = DomainModel(
                client_id=domain.client_id,
                order_id=domain.order_id,
                domain_name=domain.domain_name,
                registrar=domain.registrar,
                status=domain.status.value,
                expiry_date=domain.expiry_date,
            )
            self.session.add(db_domain)
            await self.session.flush()
            await self.session.refresh(db_domain)
        except IntegrityError as e:
            # 并发开通同一域名
            logger.warning("domain_create_conflict", domain_name=domain.domain_name)
            raise ConcurrencyConflictException("domain", domain.domain_name) from e
        logger.info(
            "domain_created",
            domain_id=db_domain.id,
            domain_name=db_domain.domain_name,
            client_id=db_domain.client_id,
        )
        return self._to_entity(db_domain)

    async def update(self, domain: Domain) -> Domain:
        db_domain = await self.session.get(DomainModel, domain.id)
        if not db_domain:
            raise ValueError(f"Domain with id {domain.id} not found")

        db_domain.status = domain.status.value
        db_domain.expiry_date = domain.expiry_date
        db_domain.registrar = domain.registrar

        await self.session.flush()
        logger.info(
            "domain_updated",
            domain_id=db_domain.id,
            status=db_domain.status,
            expiry_date=db_domain.expiry_date,
        )
        return self._to_entity(db_domain)

    async def list_active_expiring_between(self, start: datetime, end: datetime) -> List[Domain]:
        result = await self.session.execute(
            select(DomainModel)
            .where(
                DomainModel.status == DomainStatus.ACTIVE.value,
                DomainModel.expiry_date > start,
                DomainModel.expiry_date <= end,
            )
            .order_by(DomainModel.client_id, DomainModel.expiry_date)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_active_expired(self, now: datetime) -> List[Domain]:
        result = await self.session.execute(
            select(DomainModel)
            .where(
                DomainModel.status == DomainStatus.ACTIVE.value,
                DomainModel.expiry_date.is_not(None),
                DomainModel.expiry_date <= now,
            )
            .order_by(DomainModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        return Order(
            id=model.id,
            order_number=model.order_number,
            client_id=model.client_id,
            status=OrderStatus(model.status),
            subtotal=Decimal(str(model.subtotal)),
            total_amount=Decimal(str(model.total_amount)),
            reseller_id=model.reseller_id,
            affiliate_id=model.affiliate_id,
            created_at=model.created_at,
            updated_at=model.updated_at,
            items=[
                OrderItem(
                    id=item.id,
                    order_id=item.order_id,
                    product_id=item.product_id,
                    product_name=item.product_name,
                    product_type=item.product_type,
                    billing_cycle=item.billing_cycle,
                    domain_name=item.domain_name,
                    quantity=item.quantity,
                    unit_price=Decimal(str(item.unit_price)),
                    total_price=Decimal(str(item.total_price)),
                )
                for item in model.items
            ],
        )

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        db_order = await self.session.get(OrderModel, order_id)
        return self._to_entity(db_order) if db_order else None

    async def get_for_update(self, order_id: int) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def update(self, order: Order) -> Order:
        db_order = await self.session.get(OrderModel, order.id)
        if not db_order:
            raise OrderNotFoundException(order.id)
        db_order.status = order.status.value
        await self.session.flush()
        logger.info("order_updated", order_id=db_order.id, status=db_order.status)
        return self._to_entity(db_order)

    async def add_status_history(self, history: OrderStatusHistory) -> OrderStatusHistory:
        db_history = OrderStatusHistoryModel(
            order_id=history.order_id,
            old_status=history.old_status.value if history.old_status else None,
            new_status=history.new_status.value,
            reason=history.reason,
            changed_by=history.changed_by,
        )
        self.session.add(db_history)
        await self.session.flush()
        return OrderStatusHistory(
            id=db_history.id,
            order_id=db_history.order_id,
            old_status=history.old_status,
            new_status=history.new_status,
            reason=db_history.reason,
            changed_by=db_history.changed_by,
            created_at=db_history.created_at,
        )
