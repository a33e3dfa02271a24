"""
佣金分配领域服务

Commission rows are unique per (investor, invoice) and (partner, order), so a retried
settlement never pays twice.
"""
from __future__ import annotations

from datetime import datetime
from typing import List

from core.logging_config import get_logger
from domain.billing.entity import Invoice
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.provisioning.entity import Order

from .entity import CommissionStatus, InvestorCommission, PartnerCommission

logger = get_logger(__name__)


class CommissionDistributor:
    def __init__(self, uow: AbstractUnitOfWork):
        self.uow = uow

    async def distribute_investor_commissions(self, invoice: Invoice, now: datetime) -> List[InvestorCommission]:
        repo = self.uow.commission_repository
        created: List[InvestorCommission] = []
        for investor in await repo.list_active_investors():
            if await repo.investor_commission_exists(investor.id, invoice.id):
                continue
            amount = investor.commission_for(invoice.subtotal)
            if amount <= 0:
                continue
            commission = await repo.create_investor_commission(InvestorCommission(
                id=None,
                investor_id=investor.id,
                invoice_id=invoice.id,
                invoice_amount=invoice.subtotal,
                commission_amount=amount,
                status=CommissionStatus.PAID,
                created_at=now,
            ))
            investor.credit(amount)
            await repo.update_investor(investor)
            created.append(commission)
            logger.info(
                "investor_commission_distributed",
                investor_id=investor.id,
                invoice_id=invoice.id,
                amount=amount,
            )
        return created

    async def distribute_order_commissions(self, order: Order, now: datetime) -> List[PartnerCommission]:
        """经销商 / 推广员佣金，按订单小计计提"""
        repo = self.uow.commission_repository
        created: List[PartnerCommission] = []
        for partner_id in (order.reseller_id, order.affiliate_id):
            if partner_id is None:
                continue
            partner = await repo.get_partner(partner_id)
            if partner is None:
                logger.warning("commission_partner_missing", partner_id=partner_id, order_id=order.id)
                continue
            if await repo.partner_commission_exists(partner.id, order.id):
                continue
            amount = partner.commission_for(order.subtotal)
            if amount <= 0:
                continue
            commission = await repo.create_partner_commission(PartnerCommission(
                id=None,
                partner_id=partner.id,
                order_id=order.id,
                client_id=order.client_id,
                order_amount=order.subtotal,
                commission_rate=partner.commission_rate,
                commission_amount=amount,
                created_at=now,
            ))
            partner.accrue(amount)
            await repo.update_partner(partner)
            created.append(commission)
            logger.info(
                "partner_commission_accrued",
                partner_id=partner.id,
                kind=partner.kind.value,
                order_id=order.id,
                amount=amount,
            )
        return created
