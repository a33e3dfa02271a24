from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.billing.entity import (
    INVOICE_TRANSITIONS,
    REFUND_TRANSITIONS,
    BillableItem,
    BillableItemStatus,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    Refund,
    RefundStatus,
    RenewalKind,
    RenewalMetadata,
)
from domain.common.exceptions import (
    DomainValidationException,
    InvalidStatusTransitionException,
    InvoiceNotPayableException,
    PaymentExceedsBalanceException,
)
from domain.common.state import transition_table
from domain.common.values import to_money
from domain.provisioning.entity import (
    BillingCycle,
    Domain,
    DomainStatus,
    Order,
    OrderStatus,
    Service,
    ServiceStatus,
)

NOW = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)


def _invoice(total="100.00", **kwargs) -> Invoice:
    return Invoice(
        id=1,
        invoice_number="INV-20260131-0001",
        client_id=1,
        status=kwargs.pop("status", InvoiceStatus.UNPAID),
        due_date=NOW + timedelta(days=7),
        subtotal=Decimal(total),
        total_amount=Decimal(total),
        **kwargs,
    )


def test_to_money_rounds_half_up_and_rejects_floats():
    assert to_money(Decimal("2.345")) == Decimal("2.35")
    assert to_money("10") == Decimal("10.00")
    with pytest.raises(TypeError):
        to_money(1.5)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("monthly", BillingCycle.MONTHLY),
        ("Semi_Annually", BillingCycle.SEMI_ANNUALLY),
        ("yearly", BillingCycle.ANNUALLY),
        ("biennial", BillingCycle.BIENNIALLY),
        ("", BillingCycle.MONTHLY),
        ("fortnightly", BillingCycle.MONTHLY),
    ],
)
def test_billing_cycle_parse(raw, expected):
    assert BillingCycle.parse(raw) == expected


def test_billing_cycle_advance_clamps_month_end():
    assert BillingCycle.MONTHLY.advance(NOW) == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)
    assert BillingCycle.QUARTERLY.advance(NOW, 2) == datetime(2026, 7, 31, 9, 0, tzinfo=timezone.utc)
    assert BillingCycle.TRIENNIALLY.years == 3
    assert BillingCycle.MONTHLY.years == 1


def test_renewal_metadata_validation():
    meta = RenewalMetadata.from_dict({"kind": "service_renewal", "periodCount": 2})
    assert meta == RenewalMetadata(RenewalKind.SERVICE_RENEWAL, 2)
    assert meta.to_dict() == {"kind": "service_renewal", "periodCount": 2}
    assert RenewalMetadata.from_dict(None) is None
    assert RenewalMetadata.from_dict({"kind": "new_domain"}).period_count == 1

    for bad in ({"kind": "upgrade"}, {"periodCount": 1}, {"kind": "new_service", "periodCount": 0},
                {"kind": "new_service", "periodCount": "2"}, {"kind": "new_service", "extra": True}):
        with pytest.raises(DomainValidationException):
            RenewalMetadata.from_dict(bad)


def test_invoice_item_targets_at_most_one_item():
    with pytest.raises(DomainValidationException):
        InvoiceItem(id=None, invoice_id=None, description="x", unit_price=Decimal("1"), total_amount=Decimal("1"),
                    service_id=1, domain_id=2)
    with pytest.raises(DomainValidationException):
        InvoiceItem(id=None, invoice_id=None, description="x", unit_price=Decimal("1"), total_amount=Decimal("1"),
                    domain_id=2, metadata=RenewalMetadata(RenewalKind.SERVICE_RENEWAL))

    line = InvoiceItem(id=3, invoice_id=1, description="x", unit_price=Decimal("1"), total_amount=Decimal("1"),
                       domain_id=2, metadata={"kind": "domain_renewal", "periodCount": 3})
    copy = line.copy_for(9)
    assert copy.id is None and copy.invoice_id == 9
    assert copy.metadata == RenewalMetadata(RenewalKind.DOMAIN_RENEWAL, 3)
    assert copy.target_key == ("domain", 2)


def test_invoice_payment_transitions():
    invoice = _invoice()
    assert invoice.apply_payment(Decimal("40"), "bkash", NOW) == InvoiceStatus.UNPAID
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID
    assert invoice.paid_date is None

    with pytest.raises(PaymentExceedsBalanceException):
        invoice.apply_payment(Decimal("60.01"), "bkash", NOW)
    assert invoice.amount_paid == Decimal("40.00")

    invoice.apply_payment(Decimal("60"), "bkash", NOW)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_date == NOW
    assert invoice.outstanding == Decimal("0.00")


def test_invoice_refund_transitions():
    invoice = _invoice(status=InvoiceStatus.PAID, amount_paid=Decimal("100"))
    invoice.apply_refund(Decimal("30"), NOW)
    assert invoice.status == InvoiceStatus.PARTIALLY_PAID
    assert invoice.amount_paid == Decimal("70.00")
    invoice.apply_refund(Decimal("70"), NOW)
    assert invoice.status == InvoiceStatus.REFUNDED
    assert invoice.amount_paid == Decimal("0.00")

    with pytest.raises(InvalidStatusTransitionException):
        invoice.apply_refund(Decimal("1"), NOW)


def test_deleted_invoice_is_not_payable():
    invoice = _invoice()
    invoice.soft_delete("Merged into INV-1", NOW)
    assert invoice.admin_notes == "Merged into INV-1"
    with pytest.raises(InvoiceNotPayableException):
        invoice.ensure_payable(Decimal("1"))

    paid = _invoice(status=InvoiceStatus.PARTIALLY_PAID, amount_paid=Decimal("5"))
    with pytest.raises(DomainValidationException):
        paid.soft_delete("merge", NOW)


def test_due_date_only_moves_later():
    invoice = _invoice()
    original = invoice.due_date
    assert invoice.extend_due_date(original - timedelta(days=1)) is False
    assert invoice.extend_due_date(None) is False
    assert invoice.due_date == original
    assert invoice.extend_due_date(original + timedelta(days=1)) is True
    assert invoice.due_date == original + timedelta(days=1)


def test_set_totals_never_drops_below_paid():
    invoice = _invoice(status=InvoiceStatus.PARTIALLY_PAID, amount_paid=Decimal("50"))
    with pytest.raises(DomainValidationException):
        invoice.set_totals(Decimal("40"), Decimal("0"))


def test_refund_state_machine():
    refund = Refund(id=1, transaction_id=1, amount=Decimal("10"), reason="r", status=RefundStatus.PENDING_AUTHORIZATION,
                    requested_by=1)
    with pytest.raises(InvalidStatusTransitionException):
        refund.approve(2, NOW)
    refund.authorize(2, NOW)
    refund.approve(3, NOW)
    assert refund.status == RefundStatus.COMPLETED
    assert refund.completed_at == NOW
    with pytest.raises(InvalidStatusTransitionException):
        refund.reject(3, "late", NOW)

    with pytest.raises(DomainValidationException):
        Refund(id=None, transaction_id=1, amount=Decimal("0"), reason="r",
               status=RefundStatus.PENDING_AUTHORIZATION, requested_by=1)


def test_transition_tables_are_complete():
    assert INVOICE_TRANSITIONS[InvoiceStatus.REFUNDED] == frozenset()
    assert REFUND_TRANSITIONS[RefundStatus.REJECTED] == frozenset()
    with pytest.raises(ValueError):
        transition_table(OrderStatus, {OrderStatus.PENDING: set()})


def test_service_activation_and_extension():
    service = Service(id=1, client_id=1, product_name="VPS", amount=Decimal("20"), billing_cycle="quarterly",
                      status=ServiceStatus.PENDING)
    service.activate(NOW)
    assert service.next_due_date == datetime(2026, 4, 30, 9, 0, tzinfo=timezone.utc)
    with pytest.raises(InvalidStatusTransitionException):
        service.activate(NOW)

    # 未到期：从当前到期日顺延
    assert service.extend(1, NOW, from_current=True) == datetime(2026, 7, 30, 9, 0, tzinfo=timezone.utc)

    service.status = ServiceStatus.SUSPENDED
    service.next_due_date = NOW - timedelta(days=10)
    service.extend(1, NOW, from_current=True)
    assert service.status == ServiceStatus.ACTIVE
    assert service.next_due_date == datetime(2026, 4, 30, 9, 0, tzinfo=timezone.utc)

    service.status = ServiceStatus.TERMINATED
    with pytest.raises(DomainValidationException):
        service.extend(1, NOW, from_current=True)


def test_domain_lifecycle():
    domain = Domain(id=1, client_id=1, domain_name=" Example.COM ", status=DomainStatus.PENDING)
    assert domain.domain_name == "example.com"
    domain.activate(NOW, years=2)
    assert domain.expiry_date == datetime(2028, 1, 31, 9, 0, tzinfo=timezone.utc)

    domain.mark_expired(NOW)
    assert domain.is_renewable
    domain.extend(1, NOW, from_current=True)
    assert domain.status == DomainStatus.ACTIVE
    assert domain.expiry_date == datetime(2029, 1, 31, 9, 0, tzinfo=timezone.utc)

    with pytest.raises(DomainValidationException):
        Domain(id=None, client_id=1, domain_name="localhost", status=DomainStatus.PENDING)


def test_order_completes_once():
    order = Order(id=1, order_number="ORD-1", client_id=1, status=OrderStatus.PENDING)
    assert order.complete(NOW) == OrderStatus.PENDING
    with pytest.raises(InvalidStatusTransitionException):
        order.complete(NOW)


def test_billable_item_mark_invoiced():
    one_off = BillableItem(id=1, client_id=1, description="Setup", amount=Decimal("10"), quantity=3)
    assert one_off.line_total == Decimal("30.00")
    one_off.mark_invoiced()
    assert one_off.status == BillableItemStatus.INVOICED

    monthly = BillableItem(id=2, client_id=1, description="Backup", amount=Decimal("2"),
                           next_invoice_date=NOW, recurring_frequency="monthly")
    monthly.mark_invoiced()
    assert monthly.status == BillableItemStatus.UNINVOICED
    assert monthly.next_invoice_date == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)
