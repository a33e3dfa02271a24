"""
开通领域服务 - 付清发票后的开通与续费延期

每一步都先检查当前状态（以及发票行的 provisioned_at 标记），重复回调不会重复开通或重复延期。
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from core.logging_config import get_logger
from domain.billing.entity import Invoice, InvoiceItem, RenewalMetadata
from domain.billing.events import DomainActivated, OrderCompleted, ServiceActivated
from domain.common.unit_of_work import AbstractUnitOfWork

from .entity import (
    Domain,
    DomainStatus,
    Order,
    OrderStatus,
    OrderStatusHistory,
    ServiceStatus,
)

logger = get_logger(__name__)


class ProvisioningService:
    def __init__(self, uow: AbstractUnitOfWork):
        self.uow = uow
        self.events: List = []

    async def complete_order(self, order: Order, now: datetime, *, reason: str = "Invoice paid") -> bool:
        """订单完成：状态 + 历史 + 订单项开通。已完成的订单直接跳过。"""
        if order.status == OrderStatus.COMPLETED:
            return False
        previous = order.complete(now)
        await self.uow.order_repository.update(order)
        await self.uow.order_repository.add_status_history(OrderStatusHistory(
            id=None,
            order_id=order.id,
            old_status=previous,
            new_status=OrderStatus.COMPLETED,
            reason=reason,
            created_at=now,
        ))

        for item in order.items:
            if item.is_domain and item.domain_name:
                await self._provision_order_domain(order, item.domain_name, item.billing_cycle.years, now)
        for service in await self.uow.service_repository.list_pending_for_order(order.id):
            service.activate(now)
            await self.uow.service_repository.update(service)
            self._service_activated(service.id, service.client_id, service.next_due_date)

        client = await self.uow.client_repository.get_by_id(order.client_id)
        self.events.append(OrderCompleted(
            order_id=order.id,
            order_number=order.order_number,
            client_id=order.client_id,
            user_id=client.user_id if client else None,
        ))
        logger.info("order_completed", order_id=order.id, previous_status=previous.value)
        return True

    async def _provision_order_domain(self, order: Order, domain_name: str, years: int, now: datetime) -> None:
        domain = await self.uow.domain_repository.get_by_name(domain_name)
        if domain is None:
            domain = Domain(
                id=None,
                client_id=order.client_id,
                domain_name=domain_name,
                status=DomainStatus.PENDING,
                order_id=order.id,
                created_at=now,
            )
            domain.activate(now, years)
            domain = await self.uow.domain_repository.create(domain)
        elif domain.status == DomainStatus.PENDING:
            domain.activate(now, years)
            domain = await self.uow.domain_repository.update(domain)
        else:
            logger.info("order_domain_already_active", domain=domain_name, order_id=order.id)
            return
        self._domain_activated(domain)

    async def activate_invoice_targets(self, invoice: Invoice, now: datetime) -> None:
        """无订单发票：开通发票行引用的 PENDING 服务/域名"""
        for item in invoice.items:
            if item.provisioned_at is not None:
                continue
            if item.metadata is not None and item.metadata.is_renewal:
                continue
            periods = item.metadata.period_count if item.metadata else 1
            if await self._activate_target(item, periods, now):
                await self._mark_provisioned(item, now)

    async def _activate_target(self, item: InvoiceItem, periods: int, now: datetime) -> bool:
        if item.service_id is not None:
            service = await self.uow.service_repository.get_for_update(item.service_id)
            if service is None:
                logger.warning("provision_target_missing", service_id=item.service_id, item_id=item.id)
                return False
            if service.status != ServiceStatus.PENDING:
                return service.status == ServiceStatus.ACTIVE
            service.activate(now, periods)
            await self.uow.service_repository.update(service)
            self._service_activated(service.id, service.client_id, service.next_due_date)
            return True
        if item.domain_id is not None:
            domain = await self.uow.domain_repository.get_for_update(item.domain_id)
            if domain is None:
                logger.warning("provision_target_missing", domain_id=item.domain_id, item_id=item.id)
                return False
            if domain.status != DomainStatus.PENDING:
                return domain.status == DomainStatus.ACTIVE
            domain.activate(now, periods)
            await self.uow.domain_repository.update(domain)
            self._domain_activated(domain)
            return True
        return False

    async def apply_renewals(self, invoice: Invoice, now: datetime) -> None:
        """
        对带续费元数据的发票行执行开通/延期

        ``*_renewal`` with a future expiry extends from that expiry; otherwise from now.
        ``new_*`` lines only activate a PENDING target.
        """
        for item in invoice.items:
            metadata: Optional[RenewalMetadata] = item.metadata
            if metadata is None or item.provisioned_at is not None or item.target_key is None:
                continue
            if metadata.is_renewal:
                applied = await self._extend_target(item, metadata, now)
            else:
                applied = await self._activate_target(item, metadata.period_count, now)
            if applied:
                await self._mark_provisioned(item, now)

    async def _extend_target(self, item: InvoiceItem, metadata: RenewalMetadata, now: datetime) -> bool:
        if item.service_id is not None:
            service = await self.uow.service_repository.get_for_update(item.service_id)
            if service is None or not service.is_renewable:
                logger.warning(
                    "renewal_target_not_renewable",
                    service_id=item.service_id,
                    status=service.status.value if service else None,
                )
                return False
            service.extend(metadata.period_count, now, from_current=True)
            await self.uow.service_repository.update(service)
            self._service_activated(service.id, service.client_id, service.next_due_date, renewed=True)
            return True

        domain = await self.uow.domain_repository.get_for_update(item.domain_id)
        if domain is None or not domain.is_renewable:
            logger.warning(
                "renewal_target_not_renewable",
                domain_id=item.domain_id,
                status=domain.status.value if domain else None,
            )
            return False
        domain.extend(metadata.period_count, now, from_current=True)
        await self.uow.domain_repository.update(domain)
        self._domain_activated(domain, renewed=True)
        return True

    async def _mark_provisioned(self, item: InvoiceItem, now: datetime) -> None:
        item.mark_provisioned(now)
        await self.uow.invoice_repository.update_item(item)

    def _service_activated(self, service_id, client_id, next_due_date, renewed: bool = False) -> None:
        logger.info("service_provisioned", service_id=service_id, next_due_date=next_due_date, renewed=renewed)
        self.events.append(ServiceActivated(
            service_id=service_id, client_id=client_id, next_due_date=next_due_date, renewed=renewed,
        ))

    def _domain_activated(self, domain: Domain, renewed: bool = False) -> None:
        logger.info("domain_provisioned", domain_id=domain.id, expiry_date=domain.expiry_date, renewed=renewed)
        self.events.append(DomainActivated(
            domain_id=domain.id,
            client_id=domain.client_id,
            domain_name=domain.domain_name,
            expiry_date=domain.expiry_date,
            renewed=renewed,
        ))

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
