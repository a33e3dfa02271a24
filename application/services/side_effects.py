"""
Post-commit side effects.

Engines return domain events; ``SideEffectPlanner`` turns them into hooks and
``PostCommitRunner`` executes the hooks as independent tasks with a timeout. Hook failures are
logged and swallowed: a payment or refund that has committed is never undone by a failed
email, PDF, webhook or gateway call.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Iterable, Optional

from application.dtos.payments import GatewayRefundRequest
from application.ports.notifications import (
    DocumentRenderer,
    MailAttachment,
    Mailer,
    NotificationSink,
    WebhookDispatcher,
)
from application.ports.payment_gateway import GatewayClient
from core.logging_config import get_logger
from domain.billing.entity import InvoiceView
from domain.billing.events import (
    BillingEvent,
    InvoiceCreated,
    OrderCompleted,
    PaymentRecorded,
    RefundCompleted,
    RefundRequested,
    RenewalInvoiceUpdated,
)
from domain.billing.settings import SettingsLookup


logger = get_logger(__name__)

GatewayResolver = Callable[[str], Optional[GatewayClient]]
RefundRecorder = Callable[[int, str], Awaitable[None]]


@dataclass(frozen=True)
class PostCommitHook:
    name: str
    run: Callable[[], Awaitable[None]]


class PostCommitRunner:
    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    async def _run_one(self, hook: PostCommitHook) -> bool:
        try:
            await asyncio.wait_for(hook.run(), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("side_effect_timeout", hook=hook.name, timeout=self.timeout)
        except Exception as exc:  # post-commit failures must never propagate
            logger.error("side_effect_failed", hook=hook.name, error=str(exc), exc_info=True)
        return False

    async def run(self, hooks: Iterable[PostCommitHook]) -> list[str]:
        """Run hooks concurrently; returns names of the hooks that failed."""
        hooks = list(hooks)
        if not hooks:
            return []
        results = await asyncio.gather(*(self._run_one(h) for h in hooks))
        failed = [hook.name for hook, ok in zip(hooks, results) if not ok]
        logger.debug("side_effects_finished", total=len(hooks), failed=failed)
        return failed

    def dispatch(self, hooks: Iterable[PostCommitHook]) -> Optional[asyncio.Task]:
        """Fire-and-forget: schedule hooks on the running loop without awaiting them."""
        hooks = list(hooks)
        if not hooks:
            return None
        task = asyncio.get_running_loop().create_task(self.run(hooks))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """等待所有已派发的副作用完成（任务进程退出前调用）"""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)


def _money(symbol: str, amount) -> str:
    return f"{symbol}{amount}"


def _invoice_html(view: InvoiceView, headline: str, symbol: str) -> str:
    invoice = view.invoice
    rows = "".join(
        f"<tr><td>{item.description}</td><td>{_money(symbol, item.total_amount)}</td></tr>"
        for item in view.items
    )
    return (
        f"<p>Dear {view.client.name},</p>"
        f"<p>{headline}</p>"
        f"<table>{rows}</table>"
        f"<p>Invoice: {invoice.invoice_number}<br>"
        f"Total: {_money(symbol, invoice.total_amount)}<br>"
        f"Paid: {_money(symbol, invoice.amount_paid)}<br>"
        f"Due: {invoice.due_date:%Y-%m-%d}</p>"
    )


class SideEffectPlanner:
    """把领域事件映射为提交后执行的钩子"""

    def __init__(
        self,
        *,
        settings: SettingsLookup,
        app_name: str,
        notifier: Optional[NotificationSink] = None,
        mailer: Optional[Mailer] = None,
        renderer: Optional[DocumentRenderer] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        gateway_resolver: Optional[GatewayResolver] = None,
        refund_recorder: Optional[RefundRecorder] = None,
    ) -> None:
        self.settings = settings
        self.app_name = app_name
        self.notifier = notifier
        self.mailer = mailer
        self.renderer = renderer
        self.webhooks = webhooks
        self.gateway_resolver = gateway_resolver
        self.refund_recorder = refund_recorder
        self._handlers = {
            InvoiceCreated: self._on_invoice_created,
            PaymentRecorded: self._on_payment_recorded,
            RenewalInvoiceUpdated: self._on_renewal_updated,
            OrderCompleted: self._on_order_completed,
            RefundRequested: self._on_refund_requested,
            RefundCompleted: self._on_refund_completed,
        }

    def plan(self, events: Iterable[BillingEvent]) -> list[PostCommitHook]:
        hooks: list[PostCommitHook] = []
        for event in events:
            handler = self._handlers.get(type(event))
            if handler is not None:
                hooks.extend(handler(event))
            if self.webhooks is not None:
                hooks.append(PostCommitHook(
                    f"webhook:{event.name}",
                    partial(self.webhooks.dispatch, event.name, event.payload()),
                ))
        return hooks

    # -- helpers --------------------------------------------------------------

    def _notify(self, name: str, user_id, severity: str, title: str, message: str, link=None):
        if self.notifier is None:
            return []
        return [PostCommitHook(name, partial(self.notifier.notify, user_id, severity, title, message, link))]

    def _mail_invoice(self, name: str, view: InvoiceView, subject: str, headline: str, receipt_of=None):
        if self.mailer is None:
            return []

        async def send() -> None:
            symbol = await self.settings.get_currency_symbol()
            label = await self.settings.get_tax_label()
            attachments = []
            if self.renderer is not None:
                if receipt_of is not None:
                    pdf = await self.renderer.render_receipt_pdf(receipt_of, view, self.app_name, label, symbol)
                    filename = f"Receipt-{view.invoice.invoice_number}.pdf"
                else:
                    pdf = await self.renderer.render_invoice_pdf(view, self.app_name, label, symbol)
                    filename = f"Invoice-{view.invoice.invoice_number}.pdf"
                attachments.append(MailAttachment(filename=filename, content=pdf))
            await self.mailer.send(view.client.email, subject, _invoice_html(view, headline, symbol), attachments)

        return [PostCommitHook(name, send)]

    # -- handlers -------------------------------------------------------------

    def _on_invoice_created(self, event: InvoiceCreated):
        view = event.view
        number = view.invoice.invoice_number
        return [
            *self._mail_invoice(
                f"mail:invoice:{number}", view,
                f"New Invoice {number} - {self.app_name}",
                "A new invoice has been generated for your account.",
            ),
            *self._notify(
                f"notify:invoice:{number}", view.client.user_id, "info",
                "New Invoice", f"Invoice {number} for {view.invoice.total_amount} has been generated.",
                f"/client/invoices/{view.invoice.id}",
            ),
        ]

    def _on_payment_recorded(self, event: PaymentRecorded):
        view = event.view
        number = view.invoice.invoice_number
        return [
            *self._mail_invoice(
                f"mail:receipt:{event.transaction.external_tx_id}", view,
                f"Payment Receipt for {number} - {self.app_name}",
                f"We received your payment of {event.transaction.amount} via {event.transaction.gateway}.",
                receipt_of=event.transaction,
            ),
            *self._notify(
                f"notify:payment:{event.transaction.external_tx_id}", view.client.user_id, "success",
                "Payment Received",
                f"Payment of {event.transaction.amount} for invoice {number} was recorded.",
                f"/client/invoices/{view.invoice.id}",
            ),
        ]

    def _on_renewal_updated(self, event: RenewalInvoiceUpdated):
        view = event.view
        number = view.invoice.invoice_number
        return [
            *self._mail_invoice(
                f"mail:renewal:{number}", view,
                f"Renewal Notice - Invoice {number} - {self.app_name}",
                "The following items are due for renewal. They have been consolidated into a single invoice.",
            ),
            *self._notify(
                f"notify:renewal:{number}", view.client.user_id, "warning",
                "Renewal Invoice Updated",
                f"Invoice {number} now lists {len(view.items)} item(s) due for renewal.",
                f"/client/invoices/{view.invoice.id}",
            ),
        ]

    def _on_order_completed(self, event: OrderCompleted):
        return self._notify(
            f"notify:order:{event.order_number}", event.user_id, "success",
            "Order Completed", f"Order #{event.order_number} has been paid and is being provisioned.",
            f"/client/orders/{event.order_id}",
        )

    def _on_refund_requested(self, event: RefundRequested):
        # 管理员广播通知
        return self._notify(
            f"notify:refund_request:{event.refund_id}", None, "warning",
            "Refund Request", f"Refund of {event.amount} requested ({event.status}).",
            f"/admin/refunds/{event.refund_id}",
        )

    def _on_refund_completed(self, event: RefundCompleted):
        hooks = self._notify(
            f"notify:refund:{event.refund_id}", event.view.client.user_id, "info",
            "Refund Processed",
            f"A refund of {event.amount} was applied to invoice {event.view.invoice.invoice_number}.",
            f"/client/invoices/{event.view.invoice.id}",
        )
        client = self.gateway_resolver(event.gateway) if self.gateway_resolver else None
        if client is None:
            logger.info("gateway_refund_manual", refund_id=event.refund_id, gateway=event.gateway)
            return hooks

        async def call_gateway() -> None:
            try:
                result = await client.refund(GatewayRefundRequest(
                    payment_ref=event.payment_ref,
                    gateway_payment_id=event.gateway_payment_id,
                    amount=event.amount,
                    reason=event.reason,
                    idempotency_key=f"refund-{event.refund_id}",
                ))
            finally:
                await client.aclose()
            logger.info(
                "gateway_refund_succeeded",
                refund_id=event.refund_id,
                gateway=event.gateway,
                refund_ref=result.refund_ref,
            )
            if self.refund_recorder is not None:
                await self.refund_recorder(event.refund_id, result.refund_ref)

        hooks.append(PostCommitHook(f"gateway_refund:{event.refund_id}", call_gateway))
        return hooks
