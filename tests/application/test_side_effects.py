import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from application.services.side_effects import PostCommitHook, PostCommitRunner, SideEffectPlanner
from domain.billing.entity import (
    Client,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    InvoiceView,
    Transaction,
    TransactionStatus,
)
from domain.billing.events import InvoiceCreated, PaymentRecorded, RefundCompleted

NOW = datetime(2026, 3, 10, tzinfo=timezone.utc)


class Settings:
    async def get_tax_rate(self):
        return Decimal("0")

    async def get_tax_label(self):
        return "VAT"

    async def get_currency_symbol(self):
        return "TK "


class Recorder:
    def __init__(self):
        self.calls = []

    async def notify(self, user_id, severity, title, message, link=None):
        self.calls.append(("notify", user_id, title))

    async def send(self, to, subject, html_body, attachments=None):
        self.calls.append(("mail", to, subject, html_body, [a.filename for a in attachments or []]))

    async def dispatch(self, event_name, payload):
        self.calls.append(("webhook", event_name, payload))


class Renderer:
    async def render_invoice_pdf(self, view, app_name, tax_label, currency_symbol):
        return b"%PDF-invoice"

    async def render_receipt_pdf(self, transaction, view, app_name, tax_label, currency_symbol):
        return b"%PDF-receipt"


def _view() -> InvoiceView:
    invoice = Invoice(
        id=10, invoice_number="INV-20260310-0042", client_id=3, status=InvoiceStatus.PAID, due_date=NOW,
        subtotal=Decimal("25"), total_amount=Decimal("25"), amount_paid=Decimal("25"),
        items=[InvoiceItem(id=1, invoice_id=10, description="Hosting", unit_price=Decimal("25"),
                           total_amount=Decimal("25"))],
    )
    return InvoiceView(invoice=invoice, client=Client(id=3, user_id=77, email="c@example.com", name="Acme"))


def _transaction() -> Transaction:
    return Transaction(id=5, invoice_id=10, gateway="bkash", external_tx_id="TRX1", amount=Decimal("25"),
                       status=TransactionStatus.SUCCESS, idempotency_key="k")


@pytest.mark.asyncio
async def test_runner_swallows_failures_and_timeouts():
    ran = []

    async def ok():
        ran.append("ok")

    async def fails():
        raise RuntimeError("smtp down")

    async def hangs():
        await asyncio.sleep(5)

    runner = PostCommitRunner(timeout=0.05)
    failed = await runner.run([PostCommitHook("ok", ok), PostCommitHook("fails", fails), PostCommitHook("hangs", hangs)])
    assert ran == ["ok"]
    assert failed == ["fails", "hangs"]


@pytest.mark.asyncio
async def test_dispatch_then_drain():
    ran = []

    async def slow():
        await asyncio.sleep(0.01)
        ran.append("slow")

    runner = PostCommitRunner()
    assert runner.dispatch([]) is None
    task = runner.dispatch([PostCommitHook("slow", slow)])
    assert task is not None
    await runner.drain()
    assert ran == ["slow"]


@pytest.mark.asyncio
async def test_planner_mails_receipt_with_pdf_and_fans_out_webhooks():
    recorder = Recorder()
    planner = SideEffectPlanner(
        settings=Settings(), app_name="Billing", notifier=recorder, mailer=recorder,
        renderer=Renderer(), webhooks=recorder,
    )
    hooks = planner.plan([InvoiceCreated(view=_view()), PaymentRecorded(view=_view(), transaction=_transaction())])
    assert [h.name for h in hooks] == [
        "mail:invoice:INV-20260310-0042",
        "notify:invoice:INV-20260310-0042",
        "webhook:invoice.created",
        "mail:receipt:TRX1",
        "notify:payment:TRX1",
        "webhook:payment.success",
    ]

    assert await PostCommitRunner().run(hooks) == []
    mails = [c for c in recorder.calls if c[0] == "mail"]
    assert mails[1][2] == "Payment Receipt for INV-20260310-0042 - Billing"
    assert mails[1][4] == ["Receipt-INV-20260310-0042.pdf"]
    assert "TK 25.00" in mails[1][3]
    webhooks = [c for c in recorder.calls if c[0] == "webhook"]
    assert webhooks[1][2]["invoice_number"] == "INV-20260310-0042"


@pytest.mark.asyncio
async def test_manual_gateway_refund_has_no_gateway_hook():
    recorder = Recorder()
    planner = SideEffectPlanner(settings=Settings(), app_name="Billing", notifier=recorder,
                                gateway_resolver=lambda name: None)
    event = RefundCompleted(refund_id=1, amount=Decimal("5"), reason="r", gateway="bank_transfer",
                            payment_ref="BANK-1", view=_view())
    assert [h.name for h in planner.plan([event])] == ["notify:refund:1"]
