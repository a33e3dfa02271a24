"""
Composition root: wires the SQLAlchemy unit of work and the shipped adapters into
``BillingService``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from application.services.billing_service import BillingService
from core.config import settings
from infrastructure.database import AsyncSessionLocal, build_engine
from infrastructure.external.notifications import CeleryMailer, StructlogNotificationSink
from infrastructure.external.payments import get_gateway_client
from infrastructure.external.webhooks import CeleryWebhookDispatcher
from infrastructure.repositories.settings_repository import DatabaseSettingsLookup
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


def build_billing_service(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> BillingService:
    return BillingService(
        lambda: SQLAlchemyUnitOfWork(session_factory),
        DatabaseSettingsLookup(session_factory, settings.billing),
        config=settings.billing,
        notifier=StructlogNotificationSink(),
        mailer=CeleryMailer(),
        webhooks=CeleryWebhookDispatcher(session_factory),
        gateway_resolver=get_gateway_client,
    )


@asynccontextmanager
async def billing_service_scope(database_url: Optional[str] = None) -> AsyncIterator[BillingService]:
    """Service bound to a private engine, for one-shot runs under ``asyncio.run``."""
    engine = build_engine(database_url or settings.database.url)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    service = build_billing_service(session_factory)
    try:
        yield service
        await service.drain()
    finally:
        await engine.dispose()
