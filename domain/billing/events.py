"""
Billing domain events.

Engines collect these while a unit of work is open; the application layer turns them into
post-commit hooks (mail, PDF, notification, webhook, gateway refund) once the transaction
has committed. Events carry snapshots so hooks never reload state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Optional
import uuid

from .entity import InvoiceView, Transaction


@dataclass
class BillingEvent:
    name: ClassVar[str] = "billing.event"

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), kw_only=True)

    def payload(self) -> dict[str, Any]:
        return {"event_id": self.event_id, "occurred_at": self.occurred_at.isoformat()}


def _invoice_payload(view: InvoiceView) -> dict[str, Any]:
    invoice = view.invoice
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "client_id": invoice.client_id,
        "status": invoice.status.value,
        "total_amount": str(invoice.total_amount),
        "amount_paid": str(invoice.amount_paid),
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
    }


@dataclass
class InvoiceCreated(BillingEvent):
    name: ClassVar[str] = "invoice.created"

    view: InvoiceView

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), **_invoice_payload(self.view)}


@dataclass
class PaymentRecorded(BillingEvent):
    name: ClassVar[str] = "payment.success"

    view: InvoiceView
    transaction: Transaction

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            **_invoice_payload(self.view),
            "transaction_id": self.transaction.id,
            "external_tx_id": self.transaction.external_tx_id,
            "gateway": self.transaction.gateway,
            "amount": str(self.transaction.amount),
        }


@dataclass
class InvoicePaid(BillingEvent):
    name: ClassVar[str] = "invoice.paid"

    view: InvoiceView

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), **_invoice_payload(self.view)}


@dataclass
class OrderCompleted(BillingEvent):
    name: ClassVar[str] = "order.completed"

    order_id: int
    order_number: str
    client_id: int
    user_id: Optional[int] = None

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "order_id": self.order_id,
            "order_number": self.order_number,
            "client_id": self.client_id,
        }


@dataclass
class ServiceActivated(BillingEvent):
    name: ClassVar[str] = "service.activated"

    service_id: int
    client_id: int
    next_due_date: Optional[datetime]
    renewed: bool = False

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "service_id": self.service_id,
            "client_id": self.client_id,
            "next_due_date": self.next_due_date.isoformat() if self.next_due_date else None,
            "renewed": self.renewed,
        }


@dataclass
class DomainActivated(BillingEvent):
    name: ClassVar[str] = "domain.activated"

    domain_id: int
    client_id: int
    domain_name: str
    expiry_date: Optional[datetime]
    renewed: bool = False

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "domain_id": self.domain_id,
            "client_id": self.client_id,
            "domain_name": self.domain_name,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "renewed": self.renewed,
        }


@dataclass
class RenewalInvoiceUpdated(BillingEvent):
    """One consolidated notice listing every line currently on the hub invoice."""

    name: ClassVar[str] = "invoice.renewal_consolidated"

    view: InvoiceView
    added_count: int
    merged_invoice_numbers: list[str] = field(default_factory=list)
    created: bool = False

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            **_invoice_payload(self.view),
            "added_count": self.added_count,
            "merged_invoices": list(self.merged_invoice_numbers),
            "lines": [
                {"description": item.description, "amount": str(item.total_amount)}
                for item in self.view.items
            ],
        }


@dataclass
class RefundRequested(BillingEvent):
    name: ClassVar[str] = "refund.requested"

    refund_id: int
    transaction_id: int
    amount: Decimal
    status: str
    requested_by: int

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "refund_id": self.refund_id,
            "transaction_id": self.transaction_id,
            "amount": str(self.amount),
            "status": self.status,
        }


@dataclass
class RefundRejected(BillingEvent):
    name: ClassVar[str] = "refund.rejected"

    refund_id: int
    transaction_id: int
    reason: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            "refund_id": self.refund_id,
            "transaction_id": self.transaction_id,
            "reason": self.reason,
        }


@dataclass
class RefundCompleted(BillingEvent):
    name: ClassVar[str] = "refund.completed"

    refund_id: int
    amount: Decimal
    reason: str
    gateway: str
    payment_ref: str
    view: InvoiceView
    gateway_payment_id: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return {
            **super().payload(),
            **_invoice_payload(self.view),
            "refund_id": self.refund_id,
            "amount": str(self.amount),
            "gateway": self.gateway,
        }
