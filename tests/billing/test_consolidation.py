from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from application.dtos.billing import ConsolidateRenewals, RecordPayment
from domain.billing.consolidation import SkipReason
from domain.billing.entity import InvoiceItem, RenewalKind, RenewalMetadata
from domain.billing.events import RenewalInvoiceUpdated
from domain.billing.ledger import InvoiceLedger
from domain.common.exceptions import ClientNotFoundException


def _renew(client_id: int, *items) -> ConsolidateRenewals:
    return ConsolidateRenewals(
        client_id=client_id,
        items=[{"kind": kind, "item_id": item_id, "period": period} for kind, item_id, period in items],
    )


async def _invoice(uow_factory, invoice_id):
    async with uow_factory() as uow:
        return await uow.invoice_repository.get_by_id(invoice_id)


@pytest.mark.asyncio
async def test_service_and_domain_share_one_invoice(billing, seed, uow_factory, now, mailer):
    client_id = await seed.client()
    await seed.tld("org", "14.00")
    service_id = await seed.service(client_id, amount="10.00", next_due_date=now + timedelta(days=5))
    domain_id = await seed.domain(client_id, "acme.org", expiry_date=now + timedelta(days=20))

    result = await billing.consolidate_renewals(
        _renew(client_id, ("service", service_id, 1), ("domain", domain_id, 1)), now=now
    )

    invoice = result.invoice
    assert result.changed
    assert len(invoice.items) == 2
    assert invoice.due_date == now + timedelta(days=20)
    assert invoice.total_amount == Decimal("24.00")
    assert invoice.order_id is None
    kinds = {item.target_key: item.metadata.kind for item in invoice.items}
    assert kinds == {
        ("service", service_id): RenewalKind.SERVICE_RENEWAL,
        ("domain", domain_id): RenewalKind.DOMAIN_RENEWAL,
    }
    assert [type(e) for e in result.events] == [RenewalInvoiceUpdated]
    assert result.events[0].created is True

    again = await billing.consolidate_renewals(
        _renew(client_id, ("service", service_id, 1), ("domain", domain_id, 1)), now=now
    )
    assert not again.changed
    assert again.events == []
    assert {s.reason for s in again.skipped} == {SkipReason.ALREADY_BILLED}
    assert len((await _invoice(uow_factory, invoice.id)).items) == 2

    await billing.drain()
    assert [m["subject"] for m in mailer.sent] == [f"Renewal Notice - Invoice {invoice.invoice_number} - Billing"]


@pytest.mark.asyncio
async def test_due_date_only_moves_later(billing, seed, now):
    client_id = await seed.client()
    late = await seed.domain(client_id, "late.com", expiry_date=now + timedelta(days=20))
    early = await seed.service(client_id, next_due_date=now + timedelta(days=3))

    first = await billing.consolidate_renewals(_renew(client_id, ("domain", late, 1)), now=now)
    second = await billing.consolidate_renewals(_renew(client_id, ("service", early, 1)), now=now)

    assert second.invoice.id == first.invoice.id
    assert second.events[0].created is False
    assert len(second.invoice.items) == 2
    assert second.invoice.due_date == now + timedelta(days=20)


@pytest.mark.asyncio
async def test_period_multiplies_price(billing, seed, now):
    client_id = await seed.client()
    await seed.tld("co.uk", "9.50")
    await seed.tld("uk", "5.00")
    domain_id = await seed.domain(client_id, "shop.co.uk", expiry_date=now + timedelta(days=10))

    result = await billing.consolidate_renewals(_renew(client_id, ("domain", domain_id, 2)), now=now)
    line = result.invoice.items[0]
    assert line.total_amount == Decimal("19.00")
    assert line.metadata == RenewalMetadata(RenewalKind.DOMAIN_RENEWAL, 2)
    assert line.description == "Domain Renewal - shop.co.uk - 2 Years"


@pytest.mark.asyncio
async def test_other_open_invoice_is_folded_into_hub(billing, uow_factory, billing_settings, seed, now):
    client_id = await seed.client()
    domain_id = await seed.domain(client_id, "first.com", expiry_date=now + timedelta(days=10))
    service_id = await seed.service(client_id, next_due_date=now + timedelta(days=25))

    async with uow_factory() as uow:
        ledger = InvoiceLedger(uow, billing_settings)
        hub = await ledger.create_for_client(client_id, [InvoiceItem(
            id=None, invoice_id=None, description="Domain Renewal - first.com - 1 Year",
            unit_price=Decimal("15.00"), total_amount=Decimal("15.00"), domain_id=domain_id,
            metadata=RenewalMetadata(RenewalKind.DOMAIN_RENEWAL, 1),
        )], due_date=now + timedelta(days=10), now=now)
        other = await ledger.create_for_client(client_id, [InvoiceItem(
            id=None, invoice_id=None, description="Renewal - Shared Hosting",
            unit_price=Decimal("10.00"), total_amount=Decimal("10.00"), service_id=service_id,
            metadata=RenewalMetadata(RenewalKind.SERVICE_RENEWAL, 3),
        )], due_date=now + timedelta(days=25), now=now + timedelta(minutes=1))

    result = await billing.consolidate_renewals(_renew(client_id, ("service", service_id, 1)), now=now)

    assert result.invoice.id == hub.id
    assert result.merged_invoice_ids == [other.id]
    assert result.events[0].merged_invoice_numbers == [other.invoice_number]
    assert result.invoice.due_date == now + timedelta(days=25)
    assert result.invoice.total_amount == Decimal("25.00")
    folded = [i for i in result.invoice.items if i.service_id == service_id]
    # 合并时元数据原样保留
    assert folded[0].metadata == RenewalMetadata(RenewalKind.SERVICE_RENEWAL, 3)
    assert f"Merged {other.invoice_number}" in result.invoice.admin_notes

    merged = await _invoice(uow_factory, other.id)
    assert merged.is_deleted is True
    assert f"Merged into {hub.invoice_number}" in merged.admin_notes


@pytest.mark.asyncio
async def test_paid_hub_is_not_reused(billing, seed, now):
    client_id = await seed.client()
    first_service = await seed.service(client_id, next_due_date=now + timedelta(days=5))
    second_service = await seed.service(client_id, next_due_date=now + timedelta(days=6))

    first = await billing.consolidate_renewals(_renew(client_id, ("service", first_service, 1)), now=now)
    await billing.record_payment(RecordPayment(
        invoice_id=first.invoice.id, amount=Decimal("1.00"), gateway="bkash", external_tx_id="TX-PART",
    ), now=now)

    second = await billing.consolidate_renewals(_renew(client_id, ("service", second_service, 1)), now=now)
    assert second.invoice.id != first.invoice.id


@pytest.mark.asyncio
async def test_skip_reasons(billing, uow_factory, billing_settings, seed, now):
    client_id = await seed.client()
    stranger = await seed.client(email="other@example.com")
    free = await seed.service(client_id, amount="0.00", next_due_date=now + timedelta(days=5))
    pending = await seed.service(client_id, status="pending")
    foreign = await seed.service(stranger, next_due_date=now + timedelta(days=5))
    ordered = await seed.service(client_id, next_due_date=now + timedelta(days=5))
    order_id = await seed.order(client_id, [{"product_name": "Hosting", "total_price": "10.00"}])
    async with uow_factory() as uow:
        await InvoiceLedger(uow, billing_settings).create_for_client(client_id, [InvoiceItem(
            id=None, invoice_id=None, description="Hosting", unit_price=Decimal("10.00"),
            total_amount=Decimal("10.00"), service_id=ordered,
        )], order_id=order_id, now=now)

    result = await billing.consolidate_renewals(_renew(
        client_id,
        ("service", free, 1),
        ("service", pending, 1),
        ("service", foreign, 1),
        ("service", ordered, 1),
        ("domain", 404, 1),
    ), now=now)

    assert result.invoice is None
    assert not result.changed
    reasons = {s.request.item_id: s.reason for s in result.skipped}
    assert reasons == {
        free: SkipReason.ZERO_PRICE,
        pending: SkipReason.NOT_RENEWABLE,
        foreign: SkipReason.NOT_OWNED,
        ordered: SkipReason.ORDER_INVOICE,
        404: SkipReason.NOT_FOUND,
    }


@pytest.mark.asyncio
async def test_paying_renewal_invoice_extends_targets(billing, seed, uow_factory, now):
    client_id = await seed.client()
    service_id = await seed.service(client_id, amount="10.00", next_due_date=now + timedelta(days=5))
    domain_id = await seed.domain(client_id, "expired.net", status="expired", expiry_date=now - timedelta(days=3))

    result = await billing.consolidate_renewals(
        _renew(client_id, ("service", service_id, 2), ("domain", domain_id, 1)), now=now
    )
    paid = await billing.record_payment(RecordPayment(
        invoice_id=result.invoice.id, amount=result.invoice.total_amount, gateway="bkash", external_tx_id="TX-RENEW",
    ), now=now)
    assert all(item.provisioned_at == now for item in paid.invoice.items)

    async with uow_factory() as uow:
        service = await uow.service_repository.get_by_id(service_id)
        domain = await uow.domain_repository.get_by_id(domain_id)
    # 未过期从原到期日顺延，已过期从付款时间起算
    assert service.next_due_date == now + timedelta(days=5) + relativedelta(months=2)
    assert domain.status.value == "active"
    assert domain.expiry_date == now + relativedelta(years=1)

    # 重复回调不会再次顺延
    await billing.record_payment(RecordPayment(
        invoice_id=result.invoice.id, amount=result.invoice.total_amount, gateway="bkash", external_tx_id="TX-RENEW",
    ), now=now)
    async with uow_factory() as uow:
        assert (await uow.service_repository.get_by_id(service_id)).next_due_date == service.next_due_date


@pytest.mark.asyncio
async def test_unknown_client(billing):
    with pytest.raises(ClientNotFoundException):
        await billing.consolidate_renewals(_renew(12345, ("service", 1, 1)))

