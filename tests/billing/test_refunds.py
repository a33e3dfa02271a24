from decimal import Decimal

import pytest
from sqlalchemy import func, select

from application.dtos.billing import RecordPayment, RefundDecision, RequestRefund
from domain.billing.entity import InvoiceItem, InvoiceStatus, RefundStatus
from domain.billing.events import RefundCompleted, RefundRequested
from domain.billing.ledger import InvoiceLedger
from domain.billing.refund_workflow import Actor, RefundWorkflow, Role
from domain.common.exceptions import (
    InvalidStatusTransitionException,
    PermissionDeniedException,
    RefundExceedsBalanceException,
    TransactionNotRefundableException,
)
from infrastructure.models import RefundModel, TransactionModel


async def _paid_invoice(billing, seed, now, *, amount="50.00", gateway="bank_transfer", tx="TX-PAID", raw=None):
    client_id = await seed.client()
    invoice = await billing.create_invoice(client_id, [InvoiceItem(
        id=None, invoice_id=None, description="Hosting",
        unit_price=Decimal(amount), total_amount=Decimal(amount),
    )], now=now)
    result = await billing.record_payment(RecordPayment(
        invoice_id=invoice.id, amount=Decimal(amount), gateway=gateway, external_tx_id=tx, raw_response=raw,
    ), now=now)
    return result.invoice, result.transaction


def _request(transaction_id: int, amount: str, role: Role, actor_id: int = 1) -> RequestRefund:
    return RequestRefund(
        transaction_id=transaction_id, amount=Decimal(amount), reason="customer request", actor_id=actor_id, role=role,
    )


def _decide(refund_id: int, role: Role, actor_id: int = 9, reason=None) -> RefundDecision:
    return RefundDecision(refund_id=refund_id, actor_id=actor_id, role=role, reason=reason)


async def _invoice(uow_factory, invoice_id):
    async with uow_factory() as uow:
        return await uow.invoice_repository.get_by_id(invoice_id)


@pytest.mark.asyncio
async def test_admin_request_then_super_admin_approval(billing, seed, uow_factory, now):
    invoice, transaction = await _paid_invoice(billing, seed, now)

    requested = await billing.request_refund(_request(transaction.id, "30.00", Role.ADMIN), now=now)
    assert requested.refund.status == RefundStatus.PENDING_APPROVAL
    assert requested.refund.authorized_by == 1
    assert [type(e) for e in requested.events] == [RefundRequested]
    assert (await _invoice(uow_factory, invoice.id)).amount_paid == Decimal("50.00")

    approved = await billing.approve_refund(_decide(requested.refund.id, Role.SUPER_ADMIN), now=now)
    assert approved.refund.status == RefundStatus.COMPLETED
    assert approved.refund.approved_by == 9
    assert approved.settlement.amount == Decimal("-30.00")
    assert approved.settlement.refund_id == requested.refund.id
    assert [type(e) for e in approved.events] == [RefundCompleted]

    reloaded = await _invoice(uow_factory, invoice.id)
    assert reloaded.amount_paid == Decimal("20.00")
    assert reloaded.status == InvoiceStatus.PARTIALLY_PAID

    with pytest.raises(RefundExceedsBalanceException):
        await billing.request_refund(_request(transaction.id, "25.00", Role.ADMIN), now=now)

    # 退款结算交易本身不可再退
    with pytest.raises(TransactionNotRefundableException):
        await billing.request_refund(_request(approved.settlement.id, "1.00", Role.SUPER_ADMIN), now=now)


@pytest.mark.asyncio
async def test_pending_requests_count_against_ceiling(billing, seed, now):
    _, transaction = await _paid_invoice(billing, seed, now)

    await billing.request_refund(_request(transaction.id, "40.00", Role.STAFF), now=now)
    with pytest.raises(RefundExceedsBalanceException) as exc_info:
        await billing.request_refund(_request(transaction.id, "10.01", Role.STAFF), now=now)
    assert exc_info.value.details["committed"] == "40.00"


@pytest.mark.asyncio
async def test_rejected_requests_free_the_balance(billing, seed, now):
    _, transaction = await _paid_invoice(billing, seed, now)

    first = await billing.request_refund(_request(transaction.id, "50.00", Role.STAFF), now=now)
    rejected = await billing.reject_refund(_decide(first.refund.id, Role.ADMIN, reason="duplicate"), now=now)
    assert rejected.refund.status == RefundStatus.REJECTED
    assert rejected.refund.rejection_reason == "duplicate"

    second = await billing.request_refund(_request(transaction.id, "50.00", Role.STAFF), now=now)
    assert second.refund.status == RefundStatus.PENDING_AUTHORIZATION


@pytest.mark.asyncio
async def test_staff_request_needs_two_steps(billing, seed, uow_factory, now):
    invoice, transaction = await _paid_invoice(billing, seed, now)

    requested = await billing.request_refund(_request(transaction.id, "50.00", Role.STAFF), now=now)
    assert requested.refund.status == RefundStatus.PENDING_AUTHORIZATION

    with pytest.raises(PermissionDeniedException):
        await billing.authorize_refund(_decide(requested.refund.id, Role.STAFF))
    with pytest.raises(InvalidStatusTransitionException):
        await billing.approve_refund(_decide(requested.refund.id, Role.SUPER_ADMIN))

    authorized = await billing.authorize_refund(_decide(requested.refund.id, Role.ADMIN, actor_id=5), now=now)
    assert authorized.refund.status == RefundStatus.PENDING_APPROVAL
    assert authorized.refund.authorized_by == 5

    with pytest.raises(PermissionDeniedException):
        await billing.approve_refund(_decide(requested.refund.id, Role.ADMIN))
    with pytest.raises(PermissionDeniedException):
        await billing.reject_refund(_decide(requested.refund.id, Role.ADMIN))

    await billing.approve_refund(_decide(requested.refund.id, Role.SUPER_ADMIN), now=now)
    reloaded = await _invoice(uow_factory, invoice.id)
    assert reloaded.status == InvoiceStatus.REFUNDED
    assert reloaded.amount_paid == Decimal("0.00")


@pytest.mark.asyncio
async def test_super_admin_request_completes_immediately(billing, seed, uow_factory, now, notifier):
    invoice, transaction = await _paid_invoice(billing, seed, now)

    outcome = await billing.request_refund(_request(transaction.id, "50.00", Role.SUPER_ADMIN), now=now)
    assert outcome.refund.status == RefundStatus.COMPLETED
    assert [type(e) for e in outcome.events] == [RefundRequested, RefundCompleted]
    assert (await _invoice(uow_factory, invoice.id)).status == InvoiceStatus.REFUNDED

    await billing.drain()
    titles = [c["title"] for c in notifier.calls]
    assert "Refund Request" in titles
    assert "Refund Processed" in titles


@pytest.mark.asyncio
async def test_completed_refund_calls_gateway_after_commit(billing, seed, uow_factory, now, stub_gateway):
    _, transaction = await _paid_invoice(
        billing, seed, now, gateway="bkash", tx="TRX9", raw={"paymentID": "PAY-123", "trxID": "TRX9"},
    )

    outcome = await billing.request_refund(_request(transaction.id, "20.00", Role.SUPER_ADMIN), now=now)
    await billing.drain()

    assert len(stub_gateway.refunds) == 1
    sent = stub_gateway.refunds[0]
    assert sent.payment_ref == "TRX9"
    assert sent.gateway_payment_id == "PAY-123"
    assert sent.amount == Decimal("20.00")
    assert sent.idempotency_key == f"refund-{outcome.refund.id}"
    assert stub_gateway.closed is True

    async with uow_factory() as uow:
        refund = await uow.refund_repository.get_by_id(outcome.refund.id)
    assert refund.gateway_refund_ref == "RF-1"


@pytest.mark.asyncio
async def test_gateway_failure_does_not_undo_refund(billing, seed, uow_factory, now, stub_gateway):
    async def boom(req):
        raise RuntimeError("gateway down")

    stub_gateway.refund = boom
    invoice, transaction = await _paid_invoice(billing, seed, now, gateway="bkash", tx="TRX10")

    outcome = await billing.request_refund(_request(transaction.id, "10.00", Role.SUPER_ADMIN), now=now)
    await billing.drain()

    assert outcome.refund.status == RefundStatus.COMPLETED
    assert stub_gateway.closed is True
    assert (await _invoice(uow_factory, invoice.id)).amount_paid == Decimal("40.00")


async def _stale_decision(uow_factory, billing_settings, refund_id, stale, decide):
    """用锁前读到的旧快照驱动一次审批决定"""
    async with uow_factory() as uow:
        async def stale_lookup(_refund_id):
            return stale

        uow.refund_repository.get_by_id = stale_lookup
        workflow = RefundWorkflow(uow, InvoiceLedger(uow, billing_settings))
        return await decide(workflow, refund_id)


@pytest.mark.asyncio
async def test_reject_rechecks_status_under_lock(billing, seed, uow_factory, billing_settings, now):
    invoice, transaction = await _paid_invoice(billing, seed, now)
    requested = await billing.request_refund(_request(transaction.id, "30.00", Role.ADMIN), now=now)
    async with uow_factory() as uow:
        stale = await uow.refund_repository.get_by_id(requested.refund.id)
    assert stale.status == RefundStatus.PENDING_APPROVAL

    await billing.approve_refund(_decide(requested.refund.id, Role.SUPER_ADMIN), now=now)

    with pytest.raises(InvalidStatusTransitionException):
        await _stale_decision(
            uow_factory, billing_settings, requested.refund.id, stale,
            lambda workflow, refund_id: workflow.reject_refund(
                refund_id, Actor(9, Role.SUPER_ADMIN), "late", now=now,
            ),
        )

    async with uow_factory() as uow:
        current = await uow.refund_repository.get_by_id(requested.refund.id)
    assert current.status == RefundStatus.COMPLETED
    assert current.rejected_by is None
    assert (await _invoice(uow_factory, invoice.id)).amount_paid == Decimal("20.00")

    # 已完成的 30.00 仍占用额度
    with pytest.raises(RefundExceedsBalanceException):
        await billing.request_refund(_request(transaction.id, "50.00", Role.SUPER_ADMIN), now=now)


@pytest.mark.asyncio
async def test_authorize_rechecks_status_under_lock(billing, seed, uow_factory, billing_settings, now):
    _, transaction = await _paid_invoice(billing, seed, now)
    requested = await billing.request_refund(_request(transaction.id, "30.00", Role.STAFF), now=now)
    async with uow_factory() as uow:
        stale = await uow.refund_repository.get_by_id(requested.refund.id)

    await billing.reject_refund(_decide(requested.refund.id, Role.ADMIN, reason="duplicate"), now=now)

    with pytest.raises(InvalidStatusTransitionException):
        await _stale_decision(
            uow_factory, billing_settings, requested.refund.id, stale,
            lambda workflow, refund_id: workflow.authorize_refund(refund_id, Actor(9, Role.ADMIN), now=now),
        )

    async with uow_factory() as uow:
        current = await uow.refund_repository.get_by_id(requested.refund.id)
    assert current.status == RefundStatus.REJECTED
    assert current.authorized_by is None


@pytest.mark.asyncio
async def test_approval_rechecks_ceiling(billing, seed, uow_factory, session_factory, now):
    invoice, transaction = await _paid_invoice(billing, seed, now)
    requested = await billing.request_refund(_request(transaction.id, "30.00", Role.STAFF), now=now)
    await billing.authorize_refund(_decide(requested.refund.id, Role.ADMIN), now=now)

    # 申请与批准之间另有退款占用了额度
    await seed.add(RefundModel(
        transaction_id=transaction.id,
        amount=Decimal("30.00"),
        reason="parallel request",
        status=RefundStatus.PENDING_APPROVAL.value,
        requested_by=2,
    ))

    with pytest.raises(RefundExceedsBalanceException) as exc_info:
        await billing.approve_refund(_decide(requested.refund.id, Role.SUPER_ADMIN), now=now)
    assert exc_info.value.details["committed"] == "30.00"

    async with uow_factory() as uow:
        current = await uow.refund_repository.get_by_id(requested.refund.id)
    assert current.status == RefundStatus.PENDING_APPROVAL
    assert (await _invoice(uow_factory, invoice.id)).amount_paid == Decimal("50.00")

    async with session_factory() as session:
        count = await session.scalar(
            select(func.count()).select_from(TransactionModel).where(TransactionModel.invoice_id == invoice.id)
        )
    assert count == 1
