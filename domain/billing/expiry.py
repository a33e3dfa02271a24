"""
到期扫描

Finds services and domains about to expire, drops the ones already noticed at the same alert
level inside the suppression window, and groups the rest per client for consolidation.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import utcnow
from domain.provisioning.entity import BillingCycle

from .consolidation import RenewalRequest, RenewalTargetKind

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExpiryCandidate:
    client_id: int
    request: RenewalRequest
    level: str


class ExpirationSweep:
    def __init__(
        self,
        uow: AbstractUnitOfWork,
        *,
        monthly_service_days: int = 7,
        service_days: int = 30,
        domain_days: int = 30,
        service_suppress_days: int = 10,
        domain_suppress_days: int = 20,
    ):
        self.uow = uow
        self.monthly_service_days = monthly_service_days
        self.service_days = service_days
        self.domain_days = domain_days
        self.service_suppress_days = service_suppress_days
        self.domain_suppress_days = domain_suppress_days

    async def collect(self, now: Optional[datetime] = None) -> Dict[int, List[ExpiryCandidate]]:
        """按客户分组的待提醒续费项"""
        now = now or utcnow()
        grouped: Dict[int, List[ExpiryCandidate]] = defaultdict(list)
        notices = self.uow.expiry_notice_repository

        horizon = now + timedelta(days=max(self.service_days, self.monthly_service_days))
        service_since = now - timedelta(days=self.service_suppress_days)
        for service in await self.uow.service_repository.list_active_due_between(now, horizon):
            window = self.monthly_service_days if service.billing_cycle == BillingCycle.MONTHLY else self.service_days
            if service.next_due_date > now + timedelta(days=window):
                continue
            level = f"{window}d"
            if await notices.exists_since(level=level, since=service_since, service_id=service.id):
                continue
            grouped[service.client_id].append(ExpiryCandidate(
                client_id=service.client_id,
                request=RenewalRequest(RenewalTargetKind.SERVICE, service.id, 1),
                level=level,
            ))

        domain_since = now - timedelta(days=self.domain_suppress_days)
        level = f"{self.domain_days}d"
        for domain in await self.uow.domain_repository.list_active_expiring_between(
            now, now + timedelta(days=self.domain_days)
        ):
            if await notices.exists_since(level=level, since=domain_since, domain_id=domain.id):
                continue
            grouped[domain.client_id].append(ExpiryCandidate(
                client_id=domain.client_id,
                request=RenewalRequest(RenewalTargetKind.DOMAIN, domain.id, 1),
                level=level,
            ))

        logger.info(
            "expiry_candidates_collected",
            clients=len(grouped),
            items=sum(len(v) for v in grouped.values()),
        )
        return dict(grouped)

    async def record_notices(self, candidates: List[ExpiryCandidate], now: datetime) -> None:
        for candidate in candidates:
            is_service = candidate.request.kind == RenewalTargetKind.SERVICE
            await self.uow.expiry_notice_repository.record(
                client_id=candidate.client_id,
                level=candidate.level,
                sent_at=now,
                service_id=candidate.request.item_id if is_service else None,
                domain_id=None if is_service else candidate.request.item_id,
            )

    async def expire_lapsed_domains(self, now: Optional[datetime] = None) -> int:
        """ACTIVE 且已过期的域名标记为 EXPIRED"""
        now = now or utcnow()
        count = 0
        for domain in await self.uow.domain_repository.list_active_expired(now):
            domain.mark_expired(now)
            await self.uow.domain_repository.update(domain)
            count += 1
        if count:
            logger.info("domains_marked_expired", count=count)
        return count
