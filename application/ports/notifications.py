"""
Outbound collaborator ports: in-app notifications, mail, PDF rendering, webhook fan-out.

All of these run after the financial transaction has committed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from domain.billing.entity import InvoiceView, Transaction


@dataclass(frozen=True)
class MailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@runtime_checkable
class NotificationSink(Protocol):
    async def notify(
        self,
        user_id: Optional[int],
        severity: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> None: ...


@runtime_checkable
class Mailer(Protocol):
    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        attachments: Optional[list[MailAttachment]] = None,
    ) -> None: ...


@runtime_checkable
class DocumentRenderer(Protocol):
    async def render_invoice_pdf(
        self, view: InvoiceView, app_name: str, tax_label: str, currency_symbol: str
    ) -> bytes: ...

    async def render_receipt_pdf(
        self,
        transaction: Transaction,
        view: InvoiceView,
        app_name: str,
        tax_label: str,
        currency_symbol: str,
    ) -> bytes: ...


@runtime_checkable
class WebhookDispatcher(Protocol):
    async def dispatch(self, event_name: str, payload: dict[str, Any]) -> None: ...
