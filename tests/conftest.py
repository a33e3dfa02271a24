"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# 测试使用内存 SQLite，避免 import 时构建 asyncpg 引擎
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from application.dtos.payments import GatewayRefundRequest, GatewayRefundResult, InitPayment, PaymentInitResult
from application.services.billing_service import BillingService
from core.config import BillingSettings
from infrastructure.database import create_tables
from infrastructure.models import (
    BillableItemModel,
    ClientModel,
    DomainModel,
    DomainTldModel,
    InvestorModel,
    OrderItemModel,
    OrderModel,
    PartnerModel,
    ServiceModel,
)
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class StaticSettings:
    """固定的税率/货币设置"""

    def __init__(self, tax_rate: Decimal = Decimal("0"), label: str = "VAT", symbol: str = "$"):
        self.tax_rate = tax_rate
        self.label = label
        self.symbol = symbol

    async def get_tax_rate(self) -> Decimal:
        return self.tax_rate

    async def get_tax_label(self) -> str:
        return self.label

    async def get_currency_symbol(self) -> str:
        return self.symbol


class RecordingNotifier:
    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    async def notify(self, user_id, severity, title, message, link=None) -> None:
        self.calls.append({"user_id": user_id, "severity": severity, "title": title, "message": message, "link": link})


class RecordingMailer:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, to, subject, html_body, attachments=None) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html_body, "attachments": attachments or []})


class RecordingWebhooks:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def dispatch(self, event_name: str, payload: dict) -> None:
        self.events.append((event_name, payload))


class StubGatewayClient:
    provider = "stub"

    def __init__(self, refund_ref: str = "RF-1"):
        self.refund_ref = refund_ref
        self.refunds: list[GatewayRefundRequest] = []
        self.inits: list[InitPayment] = []
        self.closed = False

    async def init_payment(self, req: InitPayment) -> PaymentInitResult:
        self.inits.append(req)
        return PaymentInitResult(
            provider=self.provider,
            reference=req.reference,
            status="pending",
            redirect_url="https://gateway.test/pay",
            provider_ref="P-1",
        )

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        self.refunds.append(req)
        return GatewayRefundResult(refund_ref=self.refund_ref, status="success", provider=self.provider)

    async def aclose(self) -> None:
        self.closed = True


class Seeder:
    """直接写 ORM 模型准备测试数据"""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._orders = 0

    async def add(self, model):
        async with self.session_factory() as session:
            session.add(model)
            await session.commit()
            return model.id

    async def client(self, *, email: str = "client@example.com", name: str = "Acme Ltd", user_id: Optional[int] = 501,
                     tax_exempt: bool = False) -> int:
        return await self.add(ClientModel(email=email, name=name, user_id=user_id, tax_exempt=tax_exempt))

    async def service(self, client_id: int, *, status: str = "active", amount: str = "10.00",
                      billing_cycle: str = "monthly", next_due_date: Optional[datetime] = None,
                      order_id: Optional[int] = None, product_id: Optional[int] = None,
                      product_name: str = "Shared Hosting", domain: Optional[str] = "acme.com") -> int:
        return await self.add(ServiceModel(
            client_id=client_id,
            order_id=order_id,
            product_id=product_id,
            product_name=product_name,
            domain=domain,
            amount=Decimal(amount),
            billing_cycle=billing_cycle,
            status=status,
            next_due_date=next_due_date,
        ))

    async def domain(self, client_id: int, name: str, *, status: str = "active",
                     expiry_date: Optional[datetime] = None) -> int:
        return await self.add(DomainModel(client_id=client_id, domain_name=name, status=status, expiry_date=expiry_date))

    async def tld(self, tld: str, price: str) -> int:
        return await self.add(DomainTldModel(tld=tld, renewal_price=Decimal(price)))

    async def investor(self, *, commission_type: str = "percentage", value: str = "10.00", active: bool = True) -> int:
        return await self.add(InvestorModel(
            name="Seed Capital",
            commission_type=commission_type,
            commission_value=Decimal(value),
            is_active=active,
        ))

    async def partner(self, *, kind: str = "reseller", rate: str = "10.00") -> int:
        return await self.add(PartnerModel(kind=kind, name=f"{kind} partner", commission_rate=Decimal(rate)))

    async def billable_item(self, client_id: int, *, amount: str = "25.00", quantity: int = 1,
                            next_invoice_date: Optional[datetime] = None,
                            recurring_frequency: Optional[str] = None) -> int:
        return await self.add(BillableItemModel(
            client_id=client_id,
            description="Setup fee",
            amount=Decimal(amount),
            quantity=quantity,
            next_invoice_date=next_invoice_date,
            recurring_frequency=recurring_frequency,
        ))

    async def order(self, client_id: int, items: list[dict], *, status: str = "pending",
                    reseller_id: Optional[int] = None, affiliate_id: Optional[int] = None) -> int:
        subtotal = sum((Decimal(i["total_price"]) for i in items), Decimal("0"))
        self._orders += 1
        async with self.session_factory() as session:
            order = OrderModel(
                order_number=f"ORD-{self._orders:05d}",
                client_id=client_id,
                status=status,
                subtotal=subtotal,
                total_amount=subtotal,
                reseller_id=reseller_id,
                affiliate_id=affiliate_id,
            )
            for item in items:
                order.items.append(OrderItemModel(
                    product_id=item.get("product_id"),
                    product_name=item["product_name"],
                    product_type=item.get("product_type", "hosting"),
                    billing_cycle=item.get("billing_cycle", "monthly"),
                    domain_name=item.get("domain_name"),
                    unit_price=Decimal(item["total_price"]),
                    total_price=Decimal(item["total_price"]),
                ))
            session.add(order)
            await session.commit()
            return order.id


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def uow_factory(session_factory):
    return lambda: SQLAlchemyUnitOfWork(session_factory)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def billing_settings() -> StaticSettings:
    return StaticSettings()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def webhooks() -> RecordingWebhooks:
    return RecordingWebhooks()


@pytest.fixture
def gateways() -> dict[str, StubGatewayClient]:
    """网关名 -> 客户端；未注册的网关视为人工渠道"""
    return {}


@pytest_asyncio.fixture
async def billing(uow_factory, billing_settings, notifier, mailer, webhooks, gateways):
    service = BillingService(
        uow_factory,
        billing_settings,
        config=BillingSettings(),
        notifier=notifier,
        mailer=mailer,
        webhooks=webhooks,
        gateway_resolver=gateways.get,
    )
    yield service
    await service.drain()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def stub_gateway(gateways) -> StubGatewayClient:
    """注册为 bkash 的在线网关"""
    client = StubGatewayClient()
    gateways["bkash"] = client
    return client
