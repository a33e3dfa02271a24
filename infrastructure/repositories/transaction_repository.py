"""
交易 / 退款仓储实现
"""
from typing import List, Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from domain.billing.entity import Refund, RefundStatus, Transaction, TransactionStatus
from domain.billing.repository import RefundRepository, TransactionRepository
from domain.common.exceptions import (
    DuplicateTransactionException,
    RefundNotFoundException,
    TransactionNotFoundException,
)
from domain.common.values import to_money
from infrastructure.models.billing import RefundModel, TransactionModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            invoice_id=model.invoice_id,
            gateway=model.gateway,
            external_tx_id=model.external_tx_id,
            idempotency_key=model.idempotency_key,
            amount=Decimal(str(model.amount)),
            status=TransactionStatus(model.status),
            gateway_response=model.gateway_response,
            refund_id=model.refund_id,
            admin_notes=model.admin_notes,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Transaction) -> TransactionModel:
        return TransactionModel(
            invoice_id=entity.invoice_id,
            gateway=entity.gateway,
            external_tx_id=entity.external_tx_id,
            idempotency_key=entity.idempotency_key,
            amount=entity.amount,
            status=entity.status.value,
            gateway_response=entity.gateway_response,
            refund_id=entity.refund_id,
            admin_notes=entity.admin_notes,
        )

    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易记录，外部交易号 / 幂等键重复时抛出冲突"""
        try:
            db_tx = self._to_model(transaction)
            self.session.add(db_tx)
            await self.session.flush()
            await self.session.refresh(db_tx)
        except IntegrityError as e:
            msg = str(e.orig if e.orig is not None else e).lower()
            if "external_tx_id" in msg or "idempotency_key" in msg or "unique" in msg:
                logger.warning(
                    "transaction_create_conflict",
                    invoice_id=transaction.invoice_id,
                    external_tx_id=transaction.external_tx_id,
                )
                raise DuplicateTransactionException(transaction.external_tx_id) from e
            raise
        logger.info(
            "transaction_created",
            transaction_id=db_tx.id,
            invoice_id=db_tx.invoice_id,
            gateway=db_tx.gateway,
            amount=transaction.amount,
            status=db_tx.status,
        )
        return self._to_entity(db_tx)

    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.id == transaction_id)
        )
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def get_for_update(self, transaction_id: int) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def find_existing(
        self, external_tx_id: str, idempotency_key: Optional[str] = None
    ) -> Optional[Transaction]:
        conditions = [TransactionModel.external_tx_id == external_tx_id]
        if idempotency_key:
            conditions.append(TransactionModel.idempotency_key == idempotency_key)
        result = await self.session.execute(
            select(TransactionModel).where(or_(*conditions)).order_by(TransactionModel.id).limit(1)
        )
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def update(self, transaction: Transaction) -> Transaction:
        db_tx = await self.session.get(TransactionModel, transaction.id)
        if not db_tx:
            raise TransactionNotFoundException(transaction.id)

        db_tx.status = transaction.status.value
        db_tx.gateway_response = transaction.gateway_response
        db_tx.refund_id = transaction.refund_id
        db_tx.admin_notes = transaction.admin_notes

        await self.session.flush()
        await self.session.refresh(db_tx)

        logger.info("transaction_updated", transaction_id=db_tx.id, status=db_tx.status)
        return self._to_entity(db_tx)

    async def list_by_invoice(self, invoice_id: int) -> List[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.invoice_id == invoice_id)
            .order_by(TransactionModel.created_at.asc(), TransactionModel.id.asc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            transaction_id=model.transaction_id,
            amount=Decimal(str(model.amount)),
            reason=model.reason,
            status=RefundStatus(model.status),
            requested_by=model.requested_by,
            authorized_by=model.authorized_by,
            approved_by=model.approved_by,
            rejected_by=model.rejected_by,
            rejection_reason=model.rejection_reason,
            gateway_refund_ref=model.gateway_refund_ref,
            completed_at=model.completed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, refund: Refund) -> Refund:
        db_refund = RefundModel(
            transaction_id=refund.transaction_id,
            amount=refund.amount,
            reason=refund.reason,
            status=refund.status.value,
            requested_by=refund.requested_by,
            authorized_by=refund.authorized_by,
            approved_by=refund.approved_by,
        )
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)
        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            transaction_id=db_refund.transaction_id,
            amount=refund.amount,
            status=db_refund.status,
        )
        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.id == refund_id)
            .execution_options(populate_existing=True)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def get_for_update(self, refund_id: int) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.id == refund_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def update(self, refund: Refund) -> Refund:
        db_refund = await self.session.get(RefundModel, refund.id)
        if not db_refund:
            raise RefundNotFoundException(refund.id)

        db_refund.status = refund.status.value
        db_refund.authorized_by = refund.authorized_by
        db_refund.approved_by = refund.approved_by
        db_refund.rejected_by = refund.rejected_by
        db_refund.rejection_reason = refund.rejection_reason
        db_refund.gateway_refund_ref = refund.gateway_refund_ref
        db_refund.completed_at = refund.completed_at

        await self.session.flush()
        await self.session.refresh(db_refund)

        logger.info("refund_updated", refund_id=db_refund.id, status=db_refund.status)
        return self._to_entity(db_refund)

    async def sum_committed(self, transaction_id: int, exclude_refund_id: Optional[int] = None) -> Decimal:
        query = select(func.coalesce(func.sum(RefundModel.amount), 0)).where(
            RefundModel.transaction_id == transaction_id,
            RefundModel.status != RefundStatus.REJECTED.value,
        )
        if exclude_refund_id is not None:
            query = query.where(RefundModel.id != exclude_refund_id)
        result = await self.session.execute(query)
        # SQLite 的 SUM 返回浮点
        return to_money(Decimal(str(result.scalar() or 0)))
