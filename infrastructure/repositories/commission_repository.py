"""
佣金仓储实现
"""
from typing import List, Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from domain.commission.entity import (
    CommissionStatus,
    CommissionType,
    Investor,
    InvestorCommission,
    Partner,
    PartnerCommission,
    PartnerKind,
)
from domain.commission.repository import CommissionRepository
from domain.common.exceptions import ConcurrencyConflictException
from infrastructure.models.commission import (
    InvestorCommissionModel,
    InvestorModel,
    PartnerCommissionModel,
    PartnerModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyCommissionRepository(CommissionRepository):
    def __init__(self, session: AsyncSession):
        self.session = session

    def _investor_to_entity(self, model: InvestorModel) -> Investor:
        return Investor(
            id=model.id,
            name=model.name,
            commission_type=CommissionType(model.commission_type),
            commission_value=Decimal(str(model.commission_value)),
            is_active=model.is_active,
            total_earnings=Decimal(str(model.total_earnings)),
            wallet_balance=Decimal(str(model.wallet_balance)),
        )

    def _partner_to_entity(self, model: PartnerModel) -> Partner:
        return Partner(
            id=model.id,
            kind=PartnerKind(model.kind),
            name=model.name,
            commission_rate=Decimal(str(model.commission_rate)),
            total_earnings=Decimal(str(model.total_earnings)),
            pending_earnings=Decimal(str(model.pending_earnings)),
        )

    async def list_active_investors(self) -> List[Investor]:
        result = await self.session.execute(
            select(InvestorModel)
            .where(InvestorModel.is_active.is_(True))
            .order_by(InvestorModel.id)
            .with_for_update()
        )
        return [self._investor_to_entity(m) for m in result.scalars().all()]

    async def update_investor(self, investor: Investor) -> Investor:
        db_investor = await self.session.get(InvestorModel, investor.id)
        if not db_investor:
            raise ValueError(f"Investor with id {investor.id} not found")
        db_investor.total_earnings = investor.total_earnings
        db_investor.wallet_balance = investor.wallet_balance
        await self.session.flush()
        return self._investor_to_entity(db_investor)

    async def investor_commission_exists(self, investor_id: int, invoice_id: int) -> bool:
        result = await self.session.execute(
            select(exists().where(
                InvestorCommissionModel.investor_id == investor_id,
                InvestorCommissionModel.invoice_id == invoice_id,
            ))
        )
        return bool(result.scalar())

    async def create_investor_commission(self, commission: InvestorCommission) -> InvestorCommission:
        try:
            db_row = InvestorCommissionModel(
                investor_id=commission.investor_id,
                invoice_id=commission.invoice_id,
                invoice_amount=commission.invoice_amount,
                commission_amount=commission.commission_amount,
                status=commission.status.value,
            )
            self.session.add(db_row)
            await self.session.flush()
        except IntegrityError as e:
            raise ConcurrencyConflictException(
                "investor_commission", f"{commission.investor_id}:{commission.invoice_id}"
            ) from e
        logger.info(
            "investor_commission_created",
            investor_id=commission.investor_id,
            invoice_id=commission.invoice_id,
            amount=commission.commission_amount,
        )
        return InvestorCommission(
            id=db_row.id,
            investor_id=db_row.investor_id,
            invoice_id=db_row.invoice_id,
            invoice_amount=commission.invoice_amount,
            commission_amount=commission.commission_amount,
            status=CommissionStatus(db_row.status),
            created_at=db_row.created_at,
        )

    async def get_partner(self, partner_id: int) -> Optional[Partner]:
        result = await self.session.execute(
            select(PartnerModel).where(PartnerModel.id == partner_id).with_for_update()
        )
        db_partner = result.scalar_one_or_none()
        return self._partner_to_entity(db_partner) if db_partner else None

    async def update_partner(self, partner: Partner) -> Partner:
        db_partner = await self.session.get(PartnerModel, partner.id)
        if not db_partner:
            raise ValueError(f"Partner with id {partner.id} not found")
        db_partner.total_earnings = partner.total_earnings
        db_partner.pending_earnings = partner.pending_earnings
        await self.session.flush()
        return self._partner_to_entity(db_partner)

    async def partner_commission_exists(self, partner_id: int, order_id: int) -> bool:
        result = await self.session.execute(
            select(exists().where(
                PartnerCommissionModel.partner_id == partner_id,
                PartnerCommissionModel.order_id == order_id,
            ))
        )
        return bool(result.scalar())

    async def create_partner_commission(self, commission: PartnerCommission) -> PartnerCommission:
        try:
            db_row = PartnerCommissionModel(
                partner_id=commission.partner_id,
                order_id=commission.order_id,
                client_id=commission.client_id,
                order_amount=commission.order_amount,
                commission_rate=commission.commission_rate,
                commission_amount=commission.commission_amount,
                status=commission.status.value,
            )
            self.session.add(db_row)
            await self.session.flush()
        except IntegrityError as e:
            raise ConcurrencyConflictException(
                "partner_commission", f"{commission.partner_id}:{commission.order_id}"
            ) from e
        logger.info(
            "partner_commission_created",
            partner_id=commission.partner_id,
            order_id=commission.order_id,
            amount=commission.commission_amount,
        )
        return PartnerCommission(
            id=db_row.id,
            partner_id=db_row.partner_id,
            order_id=db_row.order_id,
            client_id=db_row.client_id,
            order_amount=commission.order_amount,
            commission_rate=commission.commission_rate,
            commission_amount=commission.commission_amount,
            status=CommissionStatus(db_row.status),
            created_at=db_row.created_at,
        )
