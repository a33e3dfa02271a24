"""
发票仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import List, Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from domain.billing.entity import Invoice, InvoiceItem, InvoiceStatus, RenewalMetadata
from domain.billing.repository import InvoiceRepository
from domain.common.exceptions import InvoiceNotFoundException, InvoiceNumberConflictException
from infrastructure.models.billing import InvoiceItemModel, InvoiceModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyInvoiceRepository(InvoiceRepository):
    """发票仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _item_to_entity(self, model: InvoiceItemModel) -> InvoiceItem:
        return InvoiceItem(
            id=model.id,
            invoice_id=model.invoice_id,
            description=model.description,
            quantity=model.quantity,
            unit_price=Decimal(str(model.unit_price)),
            total_amount=Decimal(str(model.total_amount)),
            service_id=model.service_id,
            domain_id=model.domain_id,
            billable_item_id=model.billable_item_id,
            metadata=RenewalMetadata.from_dict(model.renewal_metadata),
            provisioned_at=model.provisioned_at,
            created_at=model.created_at,
        )

    def _item_to_model(self, entity: InvoiceItem) -> InvoiceItemModel:
        return InvoiceItemModel(
            invoice_id=entity.invoice_id,
            description=entity.description,
            quantity=entity.quantity,
            unit_price=entity.unit_price,
            total_amount=entity.total_amount,
            service_id=entity.service_id,
            domain_id=entity.domain_id,
            billable_item_id=entity.billable_item_id,
            renewal_metadata=entity.metadata.to_dict() if entity.metadata else None,
            provisioned_at=entity.provisioned_at,
        )

    def _to_entity(self, model: InvoiceModel) -> Invoice:
        """将数据库模型转换为领域实体"""
        return Invoice(
            id=model.id,
            invoice_number=model.invoice_number,
            client_id=model.client_id,
            order_id=model.order_id,
            status=InvoiceStatus(model.status),
            due_date=model.due_date,
            subtotal=Decimal(str(model.subtotal)),
            tax_amount=Decimal(str(model.tax_amount)),
            total_amount=Decimal(str(model.total_amount)),
            amount_paid=Decimal(str(model.amount_paid)),
            paid_date=model.paid_date,
            payment_method=model.payment_method,
            notes=model.notes,
            admin_notes=model.admin_notes,
            is_deleted=model.is_deleted,
            deleted_at=model.deleted_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            items=[self._item_to_entity(item) for item in model.items],
        )

    def _to_model(self, entity: Invoice) -> InvoiceModel:
        """将领域实体转换为数据库模型"""
        return InvoiceModel(
            invoice_number=entity.invoice_number,
            client_id=entity.client_id,
            order_id=entity.order_id,
            status=entity.status.value,
            due_date=entity.due_date,
            subtotal=entity.subtotal,
            tax_amount=entity.tax_amount,
            total_amount=entity.total_amount,
            amount_paid=entity.amount_paid,
            paid_date=entity.paid_date,
            payment_method=entity.payment_method,
            notes=entity.notes,
            admin_notes=entity.admin_notes,
            is_deleted=entity.is_deleted,
            deleted_at=entity.deleted_at,
            items=[self._item_to_model(item) for item in entity.items],
        )

    async def _load(self, invoice_id: int, *, for_update: bool = False) -> Optional[InvoiceModel]:
        query = select(InvoiceModel).where(InvoiceModel.id == invoice_id)
        if for_update:
            query = query.with_for_update()
        # 刷新身份映射中的旧对象，保证明细集合是最新的
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def create(self, invoice: Invoice) -> Invoice:
        """创建发票及其明细"""
        db_invoice = self._to_model(invoice)
        try:
            self.session.add(db_invoice)
            await self.session.flush()
        except IntegrityError as e:
            msg = str(e.orig if e.orig is not None else e).lower()
            if "invoice_number" in msg:
                logger.warning("invoice_number_conflict", invoice_number=invoice.invoice_number)
                raise InvoiceNumberConflictException(invoice.invoice_number) from e
            raise
        logger.info(
            "invoice_created",
            invoice_id=db_invoice.id,
            invoice_number=db_invoice.invoice_number,
            client_id=db_invoice.client_id,
            order_id=db_invoice.order_id,
            items=len(db_invoice.items),
        )
        db_invoice = await self._load(db_invoice.id)
        return self._to_entity(db_invoice)

    async def get_by_id(self, invoice_id: int) -> Optional[Invoice]:
        """根据ID获取发票"""
        db_invoice = await self._load(invoice_id)
        return self._to_entity(db_invoice) if db_invoice else None

    async def get_for_update(self, invoice_id: int) -> Optional[Invoice]:
        db_invoice = await self._load(invoice_id, for_update=True)
        return self._to_entity(db_invoice) if db_invoice else None

    async def get_by_order_id(self, order_id: int) -> Optional[Invoice]:
        """根据订单ID获取发票（不含已删除）"""
        result = await self.session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.order_id == order_id, InvoiceModel.is_deleted.is_(False))
            .order_by(InvoiceModel.id)
            .limit(1)
        )
        db_invoice = result.scalar_one_or_none()
        return self._to_entity(db_invoice) if db_invoice else None

    async def exists_by_number(self, invoice_number: str) -> bool:
        result = await self.session.execute(
            select(exists().where(InvoiceModel.invoice_number == invoice_number))
        )
        return bool(result.scalar())

    async def update(self, invoice: Invoice) -> Invoice:
        """更新发票头字段"""
        db_invoice = await self.session.get(InvoiceModel, invoice.id)
        if not db_invoice:
            raise InvoiceNotFoundException(invoice.id)

        # 更新字段
        db_invoice.status = invoice.status.value
        db_invoice.due_date = invoice.due_date
        db_invoice.subtotal = invoice.subtotal
        db_invoice.tax_amount = invoice.tax_amount
        db_invoice.total_amount = invoice.total_amount
        db_invoice.amount_paid = invoice.amount_paid
        db_invoice.paid_date = invoice.paid_date
        db_invoice.payment_method = invoice.payment_method
        db_invoice.notes = invoice.notes
        db_invoice.admin_notes = invoice.admin_notes
        db_invoice.is_deleted = invoice.is_deleted
        db_invoice.deleted_at = invoice.deleted_at

        await self.session.flush()

        logger.info(
            "invoice_updated",
            invoice_id=db_invoice.id,
            status=db_invoice.status,
            amount_paid=invoice.amount_paid,
            is_deleted=db_invoice.is_deleted,
        )

        db_invoice = await self._load(invoice.id)
        return self._to_entity(db_invoice)

    async def add_items(self, invoice_id: int, items: List[InvoiceItem]) -> List[InvoiceItem]:
        db_invoice = await self.session.get(InvoiceModel, invoice_id)
        if not db_invoice:
            raise InvoiceNotFoundException(invoice_id)
        db_items = []
        for item in items:
            db_item = self._item_to_model(item)
            db_item.invoice_id = invoice_id
            db_invoice.items.append(db_item)
            db_items.append(db_item)
        await self.session.flush()
        return [self._item_to_entity(db_item) for db_item in db_items]

    async def update_item(self, item: InvoiceItem) -> InvoiceItem:
        db_item = await self.session.get(InvoiceItemModel, item.id)
        if not db_item:
            raise ValueError(f"Invoice item with id {item.id} not found")
        db_item.description = item.description
        db_item.quantity = item.quantity
        db_item.unit_price = item.unit_price
        db_item.total_amount = item.total_amount
        db_item.renewal_metadata = item.metadata.to_dict() if item.metadata else None
        db_item.provisioned_at = item.provisioned_at
        await self.session.flush()
        return self._item_to_entity(db_item)

    async def list_open_orderless(self, client_id: int) -> List[Invoice]:
        result = await self.session.execute(
            select(InvoiceModel)
            .where(
                InvoiceModel.client_id == client_id,
                InvoiceModel.status == InvoiceStatus.UNPAID.value,
                InvoiceModel.is_deleted.is_(False),
                InvoiceModel.order_id.is_(None),
            )
            .order_by(InvoiceModel.created_at.asc(), InvoiceModel.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def find_open_referencing(
        self,
        *,
        service_id: Optional[int] = None,
        domain_id: Optional[int] = None,
        billable_item_id: Optional[int] = None,
    ) -> List[Invoice]:
        item_filters = []
        if service_id is not None:
            item_filters.append(InvoiceItemModel.service_id == service_id)
        if domain_id is not None:
            item_filters.append(InvoiceItemModel.domain_id == domain_id)
        if billable_item_id is not None:
            item_filters.append(InvoiceItemModel.billable_item_id == billable_item_id)
        if not item_filters:
            return []

        referencing = select(InvoiceItemModel.invoice_id).where(*item_filters)
        result = await self.session.execute(
            select(InvoiceModel)
            .where(
                InvoiceModel.id.in_(referencing),
                InvoiceModel.status == InvoiceStatus.UNPAID.value,
                InvoiceModel.is_deleted.is_(False),
            )
            .order_by(InvoiceModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]
