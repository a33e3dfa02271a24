"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import ConcurrencyConflictException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.client_repository import (
    SQLAlchemyBillableItemRepository,
    SQLAlchemyClientRepository,
    SQLAlchemyDomainTldRepository,
    SQLAlchemyExpiryNoticeRepository,
)
from infrastructure.repositories.commission_repository import SQLAlchemyCommissionRepository
from infrastructure.repositories.invoice_repository import SQLAlchemyInvoiceRepository
from infrastructure.repositories.provisioning_repository import (
    SQLAlchemyDomainRepository,
    SQLAlchemyOrderRepository,
    SQLAlchemyServiceRepository,
)
from infrastructure.repositories.transaction_repository import (
    SQLAlchemyRefundRepository,
    SQLAlchemyTransactionRepository,
)


logger = get_logger(__name__)

# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

_REPOSITORIES = (
    "invoice_repository",
    "transaction_repository",
    "refund_repository",
    "client_repository",
    "billable_item_repository",
    "tld_repository",
    "expiry_notice_repository",
    "service_repository",
    "domain_repository",
    "order_repository",
    "commission_repository",
)


def _sqlstate(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_retryable_db_error(exc: BaseException) -> bool:
    return isinstance(exc, DBAPIError) and _sqlstate(exc) in _RETRYABLE_SQLSTATES


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work

    Serialization failures and deadlocks surface as ``ConcurrencyConflictException`` so the
    application layer can retry the whole unit.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session
        self._clear_repositories()

    def _clear_repositories(self) -> None:
        for name in _REPOSITORIES:
            setattr(self, name, None)

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        session = self.session
        self.invoice_repository = SQLAlchemyInvoiceRepository(session)
        self.transaction_repository = SQLAlchemyTransactionRepository(session)
        self.refund_repository = SQLAlchemyRefundRepository(session)
        self.client_repository = SQLAlchemyClientRepository(session)
        self.billable_item_repository = SQLAlchemyBillableItemRepository(session)
        self.tld_repository = SQLAlchemyDomainTldRepository(session)
        self.expiry_notice_repository = SQLAlchemyExpiryNoticeRepository(session)
        self.service_repository = SQLAlchemyServiceRepository(session)
        self.domain_repository = SQLAlchemyDomainRepository(session)
        self.order_repository = SQLAlchemyOrderRepository(session)
        self.commission_repository = SQLAlchemyCommissionRepository(session)
        # 仅在非只读模式下显式开启事务
        if not self._readonly and not session.in_transaction():
            self._transaction = await session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        except DBAPIError as commit_error:
            await self.rollback()
            if is_retryable_db_error(commit_error):
                logger.warning("uow_commit_conflict", sqlstate=_sqlstate(commit_error))
                raise ConcurrencyConflictException("transaction", _sqlstate(commit_error)) from commit_error
            raise
        finally:
            # 事务在 commit/rollback 后通常会结束，这里仅在仍然活动时做安全关闭
            tx = getattr(self, "_transaction", None)
            if tx is not None and getattr(tx, "is_active", False):
                close = getattr(tx, "close", None)
                if callable(close):
                    res = close()
                    if inspect.isawaitable(res):
                        await res
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self._clear_repositories()
        if exc is not None and is_retryable_db_error(exc):
            logger.warning("uow_statement_conflict", sqlstate=_sqlstate(exc))
            raise ConcurrencyConflictException("transaction", _sqlstate(exc)) from exc

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
