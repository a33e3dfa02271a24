import base64
import json
from decimal import Decimal

import pytest

from application.ports.notifications import MailAttachment
from core.config import BillingSettings
from infrastructure.external.notifications import CeleryMailer
from infrastructure.external.webhooks import CeleryWebhookDispatcher, serialize_event, sign_payload
from infrastructure.models.settings import SystemSettingModel, WebhookSubscriptionModel
from infrastructure.repositories.settings_repository import DatabaseSettingsLookup
from infrastructure.tasks.tasks.email import build_message


class FakeDispatcher:
    def __init__(self):
        self.emails = []
        self.webhooks = []

    def send_email(self, to, subject, html_body, attachments=None):
        self.emails.append({"to": to, "subject": subject, "html_body": html_body, "attachments": attachments})

    def deliver_webhook(self, url, event_name, body, signature):
        self.webhooks.append({"url": url, "event": event_name, "body": body, "signature": signature})


async def _put(session_factory, *models):
    async with session_factory() as session:
        session.add_all(models)
        await session.commit()


@pytest.mark.asyncio
async def test_settings_lookup_reads_system_settings(session_factory):
    lookup = DatabaseSettingsLookup(session_factory, BillingSettings(default_tax_rate=Decimal("0.05")))
    assert await lookup.get_tax_rate() == Decimal("0.05")
    assert await lookup.get_tax_label() == "Tax"
    assert await lookup.get_currency_symbol() == "$"

    await _put(
        session_factory,
        SystemSettingModel(key="taxRate", value="15"),
        SystemSettingModel(key="taxName", value="VAT"),
        SystemSettingModel(key="currency", value="bdt"),
    )
    assert await lookup.get_tax_rate() == Decimal("0.15")
    assert await lookup.get_tax_label() == "VAT"
    assert await lookup.get_currency_symbol() == "TK "


@pytest.mark.asyncio
async def test_settings_lookup_falls_back_on_bad_values(session_factory):
    await _put(
        session_factory,
        SystemSettingModel(key="taxRate", value="fifteen"),
        SystemSettingModel(key="currency", value="JPY"),
    )
    lookup = DatabaseSettingsLookup(session_factory, BillingSettings())
    assert await lookup.get_tax_rate() == Decimal("0")
    assert await lookup.get_currency_symbol() == "JPY "


@pytest.mark.asyncio
async def test_webhooks_fan_out_to_matching_subscriptions(session_factory):
    await _put(
        session_factory,
        WebhookSubscriptionModel(url="https://a.test/hook", secret="s-a", events="*", is_active=True),
        WebhookSubscriptionModel(url="https://b.test/hook", secret="s-b", events="invoice.paid, refund.completed",
                                 is_active=True),
        WebhookSubscriptionModel(url="https://c.test/hook", secret="s-c", events="invoice.created", is_active=True),
        WebhookSubscriptionModel(url="https://d.test/hook", secret="s-d", events="*", is_active=False),
    )
    fake = FakeDispatcher()
    webhooks = CeleryWebhookDispatcher(session_factory, fake)
    payload = {"invoice_id": 7, "amount_paid": "25.00"}

    await webhooks.dispatch("invoice.paid", payload)

    assert sorted(w["url"] for w in fake.webhooks) == ["https://a.test/hook", "https://b.test/hook"]
    body = serialize_event("invoice.paid", payload)
    assert json.loads(body) == {"event": "invoice.paid", "data": payload}
    for delivery in fake.webhooks:
        assert delivery["body"] == body
        secret = "s-a" if delivery["url"].startswith("https://a.") else "s-b"
        assert delivery["signature"] == sign_payload(secret, body)


@pytest.mark.asyncio
async def test_mailer_encodes_attachments():
    fake = FakeDispatcher()
    mailer = CeleryMailer(fake)
    await mailer.send("c@example.com", "New Invoice INV-1 - Billing", "<p>hi</p>",
                      [MailAttachment(filename="Invoice-INV-1.pdf", content=b"%PDF-1.4")])

    sent = fake.emails[0]
    assert sent["to"] == "c@example.com"
    assert sent["attachments"] == [{
        "filename": "Invoice-INV-1.pdf",
        "content_type": "application/pdf",
        "content_b64": base64.b64encode(b"%PDF-1.4").decode("ascii"),
    }]


def test_build_message_attaches_pdf():
    message = build_message(
        "c@example.com",
        "Payment Receipt for INV-1 - Billing",
        "<p>Thanks</p>",
        [{"filename": "Receipt-INV-1.pdf", "content_type": "application/pdf",
          "content_b64": base64.b64encode(b"%PDF-1.4").decode("ascii")}],
    )
    assert message["To"] == "c@example.com"
    assert message["Subject"] == "Payment Receipt for INV-1 - Billing"
    assert "<p>Thanks</p>" in message.get_body(preferencelist=("html",)).get_content()

    attachments = list(message.iter_attachments())
    assert len(attachments) == 1
    assert attachments[0].get_filename() == "Receipt-INV-1.pdf"
    assert attachments[0].get_content() == b"%PDF-1.4"
