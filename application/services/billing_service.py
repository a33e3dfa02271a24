"""
Application service orchestrating billing use-cases.

Each operation opens one unit of work, runs a domain engine inside it, commits, and only then
hands the collected domain events to the side-effect runner. Conflicts (duplicate gateway ids,
serialization failures) are retried with tenacity; a retried duplicate payment resolves to a
no-op result.

Infrastructure (unit of work factory, settings lookup, mail/notification/webhook adapters and
gateway clients) is injected from the composition root.
"""
from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.billing import (
    ConsolidateRenewals,
    RecordPayment,
    RefundDecision,
    RequestRefund,
    SubmitManualPayment,
)
from application.dtos.payments import InitPayment, PaymentInitResult
from application.ports.notifications import (
    DocumentRenderer,
    Mailer,
    NotificationSink,
    WebhookDispatcher,
)
from application.services.side_effects import (
    GatewayResolver,
    PostCommitRunner,
    SideEffectPlanner,
)
from core.config import BillingSettings
from core.logging_config import get_logger
from domain.billing.consolidation import (
    ConsolidationResult,
    RenewalConsolidationEngine,
    RenewalRequest,
)
from domain.billing.entity import Invoice, InvoiceItem, InvoiceView, Refund, Transaction
from domain.billing.expiry import ExpirationSweep
from domain.billing.ledger import InvoiceLedger
from domain.billing.pricing import RenewalPricingResolver
from domain.billing.recurring import RecurringChargeGenerator
from domain.billing.refund_workflow import Actor, RefundOutcome, RefundWorkflow
from domain.billing.settings import SettingsLookup
from domain.billing.settlement import SettlementEngine, SettlementResult
from domain.common.exceptions import (
    ConflictException,
    DomainValidationException,
    InvoiceNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import utcnow


logger = get_logger(__name__)

T = TypeVar("T")
UowFactory = Callable[[], AbstractUnitOfWork]


class BillingService:
    def __init__(
        self,
        uow_factory: UowFactory,
        settings: SettingsLookup,
        *,
        config: Optional[BillingSettings] = None,
        notifier: Optional[NotificationSink] = None,
        mailer: Optional[Mailer] = None,
        renderer: Optional[DocumentRenderer] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        gateway_resolver: Optional[GatewayResolver] = None,
        runner: Optional[PostCommitRunner] = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.settings = settings
        self.config = config or BillingSettings()
        self.gateway_resolver = gateway_resolver
        self.runner = runner or PostCommitRunner(timeout=self.config.side_effect_timeout)
        self.planner = SideEffectPlanner(
            settings=settings,
            app_name=self.config.app_name,
            notifier=notifier,
            mailer=mailer,
            renderer=renderer,
            webhooks=webhooks,
            gateway_resolver=gateway_resolver,
            refund_recorder=self.record_gateway_refund,
        )

    # -- plumbing -------------------------------------------------------------

    def _ledger(self, uow: AbstractUnitOfWork) -> InvoiceLedger:
        return InvoiceLedger(
            uow,
            self.settings,
            default_due_days=self.config.default_due_days,
            number_prefix=self.config.invoice_prefix,
        )

    def _pricing(self, uow: AbstractUnitOfWork) -> RenewalPricingResolver:
        return RenewalPricingResolver(uow.tld_repository, self.config.default_domain_renewal_price)

    def _consolidation(self, uow: AbstractUnitOfWork) -> RenewalConsolidationEngine:
        return RenewalConsolidationEngine(uow, self._ledger(uow), self._pricing(uow))

    async def _retrying(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.conflict_retry_attempts),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1.0),
            retry=retry_if_exception_type(ConflictException),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "billing_conflict_retry",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await fn()

    def _after_commit(self, events: List) -> None:
        hooks = self.planner.plan(events)
        if hooks:
            self.runner.dispatch(hooks)

    async def drain(self) -> None:
        """等待已派发的提交后副作用（任务/测试中使用）"""
        await self.runner.drain()

    # -- settlement -----------------------------------------------------------

    async def record_payment(self, cmd: RecordPayment, *, now: Optional[datetime] = None) -> SettlementResult:
        async def attempt() -> SettlementResult:
            async with self.uow_factory() as uow:
                engine = SettlementEngine(uow, self._ledger(uow))
                return await engine.record_payment(
                    cmd.invoice_id,
                    cmd.amount,
                    cmd.gateway,
                    cmd.external_tx_id,
                    raw_response=cmd.raw_response,
                    idempotency_key=cmd.idempotency_key,
                    now=now,
                )

        result = await self._retrying("record_payment", attempt)
        self._after_commit(result.events)
        return result

    async def submit_manual_payment(self, cmd: SubmitManualPayment, *, now: Optional[datetime] = None) -> Transaction:
        async with self.uow_factory() as uow:
            engine = SettlementEngine(uow, self._ledger(uow))
            return await engine.record_pending_payment(
                cmd.invoice_id, cmd.amount, cmd.gateway, cmd.external_tx_id, notes=cmd.notes, now=now,
            )

    async def confirm_manual_payment(self, transaction_id: int, *, now: Optional[datetime] = None) -> SettlementResult:
        async def attempt() -> SettlementResult:
            async with self.uow_factory() as uow:
                engine = SettlementEngine(uow, self._ledger(uow))
                return await engine.confirm_pending_payment(transaction_id, now=now)

        result = await self._retrying("confirm_manual_payment", attempt)
        self._after_commit(result.events)
        return result

    async def reject_manual_payment(
        self, transaction_id: int, reason: Optional[str] = None, *, now: Optional[datetime] = None
    ) -> Transaction:
        async with self.uow_factory() as uow:
            engine = SettlementEngine(uow, self._ledger(uow))
            return await engine.reject_pending_payment(transaction_id, reason, now=now)

    async def init_payment(self, invoice_id: int, gateway: str, callback_url: Optional[str] = None) -> PaymentInitResult:
        """向网关发起支付，返回跳转地址或令牌（不写库）"""
        client = self.gateway_resolver(gateway) if self.gateway_resolver else None
        if client is None:
            raise DomainValidationException(f"Gateway {gateway} has no online payment client", field="gateway")
        async with self.uow_factory() as uow:
            invoice = await uow.invoice_repository.get_by_id(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundException(invoice_id)
            invoice.ensure_payable(invoice.outstanding)
        try:
            return await client.init_payment(InitPayment(
                amount=invoice.outstanding,
                reference=invoice.invoice_number,
                callback_url=callback_url,
            ))
        finally:
            await client.aclose()

    # -- ledger ---------------------------------------------------------------

    async def create_invoice(
        self,
        client_id: int,
        lines: List[InvoiceItem],
        *,
        due_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        async def attempt():
            async with self.uow_factory() as uow:
                ledger = self._ledger(uow)
                created = await ledger.create_for_client(client_id, lines, due_date=due_date, notes=notes, now=now)
                return created, ledger.clear_events()

        # 发票号撞号时整体重试
        invoice, events = await self._retrying("create_invoice", attempt)
        self._after_commit(events)
        return invoice

    async def create_invoice_from_order(self, order_id: int, *, now: Optional[datetime] = None) -> Invoice:
        async def attempt():
            async with self.uow_factory() as uow:
                ledger = self._ledger(uow)
                created = await ledger.create_from_order(order_id, now=now)
                return created, ledger.clear_events()

        invoice, events = await self._retrying("create_invoice_from_order", attempt)
        self._after_commit(events)
        return invoice

    # -- consolidation --------------------------------------------------------

    async def consolidate_renewals(
        self, cmd: ConsolidateRenewals, *, now: Optional[datetime] = None
    ) -> ConsolidationResult:
        requests = [RenewalRequest(item.kind, item.item_id, item.period) for item in cmd.items]

        async def attempt() -> ConsolidationResult:
            async with self.uow_factory() as uow:
                return await self._consolidation(uow).consolidate(cmd.client_id, requests, now=now)

        result = await self._retrying("consolidate_renewals", attempt)
        self._after_commit(result.events)
        return result

    async def run_expiration_sweep(self, now: Optional[datetime] = None) -> List[ConsolidationResult]:
        """每日到期扫描：按客户合并续费，每个客户独立事务"""
        now = now or utcnow()
        async with self.uow_factory() as uow:
            sweep = self._sweep(uow)
            await sweep.expire_lapsed_domains(now)
            grouped = await sweep.collect(now)

        results: List[ConsolidationResult] = []
        for client_id, candidates in grouped.items():
            requests = [c.request for c in candidates]

            async def attempt(client_id=client_id, candidates=candidates, requests=requests) -> ConsolidationResult:
                async with self.uow_factory() as uow:
                    result = await self._consolidation(uow).consolidate(client_id, requests, now=now)
                    await self._sweep(uow).record_notices(candidates, now)
                    return result

            try:
                result = await self._retrying("expiration_sweep", attempt)
            except ConflictException:
                logger.error("expiration_sweep_client_failed", client_id=client_id, exc_info=True)
                continue
            self._after_commit(result.events)
            results.append(result)
        logger.info("expiration_sweep_finished", clients=len(grouped), consolidated=sum(r.changed for r in results))
        return results

    def _sweep(self, uow: AbstractUnitOfWork) -> ExpirationSweep:
        return ExpirationSweep(
            uow,
            monthly_service_days=self.config.monthly_service_notice_days,
            service_days=self.config.service_notice_days,
            domain_days=self.config.domain_notice_days,
            service_suppress_days=self.config.service_notice_suppress_days,
            domain_suppress_days=self.config.domain_notice_suppress_days,
        )

    async def generate_recurring_invoices(self, now: Optional[datetime] = None) -> List[Invoice]:
        async def attempt():
            async with self.uow_factory() as uow:
                ledger = self._ledger(uow)
                generator = RecurringChargeGenerator(uow, ledger, due_days=self.config.recurring_due_days)
                invoices = await generator.generate(now)
                return invoices, ledger.clear_events()

        invoices, events = await self._retrying("generate_recurring_invoices", attempt)
        self._after_commit(events)
        return invoices

    # -- refunds --------------------------------------------------------------

    async def _refund_op(self, operation: str, fn: Callable[[RefundWorkflow], Awaitable[RefundOutcome]]) -> RefundOutcome:
        async def attempt() -> RefundOutcome:
            async with self.uow_factory() as uow:
                return await fn(RefundWorkflow(uow, self._ledger(uow)))

        outcome = await self._retrying(operation, attempt)
        self._after_commit(outcome.events)
        return outcome

    async def request_refund(self, cmd: RequestRefund, *, now: Optional[datetime] = None) -> RefundOutcome:
        actor = Actor(cmd.actor_id, cmd.role)
        return await self._refund_op(
            "request_refund",
            lambda wf: wf.request_refund(cmd.transaction_id, cmd.amount, cmd.reason, actor, now=now),
        )

    async def authorize_refund(self, cmd: RefundDecision, *, now: Optional[datetime] = None) -> RefundOutcome:
        logger.info("refund_authorize_request", **cmd.context())
        actor = Actor(cmd.actor_id, cmd.role)
        return await self._refund_op("authorize_refund", lambda wf: wf.authorize_refund(cmd.refund_id, actor, now=now))

    async def approve_refund(self, cmd: RefundDecision, *, now: Optional[datetime] = None) -> RefundOutcome:
        logger.info("refund_approve_request", **cmd.context())
        actor = Actor(cmd.actor_id, cmd.role)
        return await self._refund_op("approve_refund", lambda wf: wf.approve_refund(cmd.refund_id, actor, now=now))

    async def reject_refund(self, cmd: RefundDecision, *, now: Optional[datetime] = None) -> RefundOutcome:
        logger.info("refund_reject_request", **cmd.context())
        actor = Actor(cmd.actor_id, cmd.role)
        return await self._refund_op(
            "reject_refund", lambda wf: wf.reject_refund(cmd.refund_id, actor, cmd.reason, now=now)
        )

    async def record_gateway_refund(self, refund_id: int, refund_ref: str) -> None:
        async with self.uow_factory() as uow:
            refund: Refund = await RefundWorkflow(uow, self._ledger(uow)).record_gateway_refund(refund_id, refund_ref)
        logger.info("gateway_refund_recorded", refund_id=refund.id, refund_ref=refund_ref)

    async def get_invoice_view(self, invoice_id: int) -> InvoiceView:
        async with self.uow_factory() as uow:
            return await self._ledger(uow).load_view(invoice_id)
