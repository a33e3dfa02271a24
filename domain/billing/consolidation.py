"""
续费合并引擎

Keeps one open renewal ("hub") invoice per client: new renewal charges are appended to it,
other open order-less invoices that already bill one of the requested items are folded in,
and the hub's due date only ever moves later. Runs with the client row locked.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from core.logging_config import get_logger
from domain.common.exceptions import ClientNotFoundException, DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.common.values import utcnow
from domain.provisioning.entity import Domain, Service

from .entity import (
    Invoice,
    InvoiceItem,
    RenewalKind,
    RenewalMetadata,
)
from .events import RenewalInvoiceUpdated
from .ledger import InvoiceLedger
from .pricing import RenewalPricingResolver

logger = get_logger(__name__)


class RenewalTargetKind(str, Enum):
    SERVICE = "service"
    DOMAIN = "domain"


class SkipReason(str, Enum):
    ALREADY_BILLED = "already_billed"
    ORDER_INVOICE = "order_invoice"
    ZERO_PRICE = "zero_price"
    NOT_FOUND = "not_found"
    NOT_OWNED = "not_owned"
    NOT_RENEWABLE = "not_renewable"


@dataclass(frozen=True)
class RenewalRequest:
    kind: RenewalTargetKind
    item_id: int
    period: int = 1

    def __post_init__(self):
        object.__setattr__(self, "kind", RenewalTargetKind(self.kind))
        if self.period < 1:
            raise DomainValidationException(f"续费周期必须 >= 1: {self.period}", field="period")

    @property
    def key(self) -> tuple[str, int]:
        return (self.kind.value, self.item_id)


@dataclass
class SkippedRenewal:
    request: RenewalRequest
    reason: SkipReason
    invoice_id: Optional[int] = None


@dataclass
class ConsolidationResult:
    invoice: Optional[Invoice]
    added: List[InvoiceItem] = field(default_factory=list)
    skipped: List[SkippedRenewal] = field(default_factory=list)
    merged_invoice_ids: List[int] = field(default_factory=list)
    events: List = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added)


Target = Union[Service, Domain]


def _describe(target: Target, period: int) -> str:
    if isinstance(target, Service):
        name = f"{target.product_name} ({target.domain})" if target.domain else target.product_name
        return f"Renewal - {name} - {period} x {target.billing_cycle.value}"
    unit = "Year" if period == 1 else "Years"
    return f"Domain Renewal - {target.domain_name} - {period} {unit}"


def _expiry_of(target: Target) -> Optional[datetime]:
    return target.next_due_date if isinstance(target, Service) else target.expiry_date


class RenewalConsolidationEngine:
    def __init__(
        self,
        uow: AbstractUnitOfWork,
        ledger: InvoiceLedger,
        pricing: RenewalPricingResolver,
    ):
        self.uow = uow
        self.ledger = ledger
        self.pricing = pricing

    async def _load_target(self, request: RenewalRequest) -> Optional[Target]:
        if request.kind == RenewalTargetKind.SERVICE:
            return await self.uow.service_repository.get_by_id(request.item_id)
        return await self.uow.domain_repository.get_by_id(request.item_id)

    async def _order_invoice_for(self, request: RenewalRequest) -> Optional[Invoice]:
        kwargs = {"service_id": request.item_id} if request.kind == RenewalTargetKind.SERVICE else {
            "domain_id": request.item_id
        }
        for invoice in await self.uow.invoice_repository.find_open_referencing(**kwargs):
            if invoice.order_id is not None:
                return invoice
        return None

    def _build_line(self, request: RenewalRequest, target: Target, price) -> InvoiceItem:
        is_service = request.kind == RenewalTargetKind.SERVICE
        return InvoiceItem(
            id=None,
            invoice_id=None,
            description=_describe(target, request.period),
            unit_price=price,
            total_amount=price,
            service_id=target.id if is_service else None,
            domain_id=None if is_service else target.id,
            metadata=RenewalMetadata(
                RenewalKind.SERVICE_RENEWAL if is_service else RenewalKind.DOMAIN_RENEWAL,
                request.period,
            ),
        )

    async def consolidate(
        self,
        client_id: int,
        requests: List[RenewalRequest],
        *,
        now: Optional[datetime] = None,
    ) -> ConsolidationResult:
        now = now or utcnow()
        client = await self.uow.client_repository.lock(client_id)
        if client is None:
            raise ClientNotFoundException(client_id)

        open_invoices = await self.uow.invoice_repository.list_open_orderless(client_id)
        hub: Optional[Invoice] = open_invoices[0] if open_invoices else None
        others: Dict[int, Invoice] = {inv.id: inv for inv in open_invoices[1:]}

        billed = hub.target_keys() if hub else set()
        new_lines: List[InvoiceItem] = []
        folded: List[Invoice] = []
        skipped: List[SkippedRenewal] = []
        due_candidates: List[datetime] = []

        def skip(request: RenewalRequest, reason: SkipReason, invoice_id: Optional[int] = None) -> None:
            skipped.append(SkippedRenewal(request=request, reason=reason, invoice_id=invoice_id))

        for request in requests:
            target = await self._load_target(request)
            if target is None:
                skip(request, SkipReason.NOT_FOUND)
                continue
            if target.client_id != client_id:
                skip(request, SkipReason.NOT_OWNED)
                continue
            if not target.is_renewable:
                skip(request, SkipReason.NOT_RENEWABLE)
                continue
            if request.key in billed:
                skip(request, SkipReason.ALREADY_BILLED, hub.id if hub else None)
                continue

            other = next((inv for inv in others.values() if request.key in inv.target_keys()), None)
            if other is not None:
                # fold the whole invoice; its lines travel with their metadata unchanged
                for line in other.items:
                    if line.target_key is not None and line.target_key in billed:
                        continue
                    new_lines.append(line.copy_for(hub.id))
                    if line.target_key is not None:
                        billed.add(line.target_key)
                due_candidates.append(other.due_date)
                folded.append(other)
                del others[other.id]
                continue

            order_invoice = await self._order_invoice_for(request)
            if order_invoice is not None:
                skip(request, SkipReason.ORDER_INVOICE, order_invoice.id)
                continue

            price = await self.pricing.price_for_renewal(target, request.period)
            if price <= 0:
                skip(request, SkipReason.ZERO_PRICE)
                continue

            new_lines.append(self._build_line(request, target, price))
            billed.add(request.key)
            expiry = _expiry_of(target)
            if expiry is not None:
                due_candidates.append(expiry)

        if not new_lines and not folded:
            logger.info("renewal_consolidation_noop", client_id=client_id, skipped=len(skipped))
            return ConsolidationResult(invoice=hub, skipped=skipped)

        latest = max(due_candidates) if due_candidates else None
        created = hub is None
        if hub is None:
            # 新建的 hub 以最晚到期日为截止日期，已过期则按默认账期
            due = latest if latest is not None and latest > now else None
            hub = await self.ledger.create_invoice(client, new_lines, due_date=due, now=now, announce=False)
            added = list(hub.items)
        else:
            added = await self.uow.invoice_repository.add_items(hub.id, new_lines)
            hub.items.extend(added)
            await self.ledger.recalculate_totals(hub, client)
            hub.extend_due_date(latest)
            hub.updated_at = now

        merged_numbers = []
        for invoice in folded:
            await self.ledger.soft_delete(invoice, f"Merged into {hub.invoice_number}", now=now)
            hub.append_admin_note(f"Merged {invoice.invoice_number} on {now:%Y-%m-%d}")
            merged_numbers.append(invoice.invoice_number)
        hub = await self.uow.invoice_repository.update(hub)

        view = await self.ledger.load_view(hub.id)
        logger.info(
            "invoice_consolidated",
            client_id=client_id,
            invoice_id=hub.id,
            invoice_number=hub.invoice_number,
            added=len(added),
            merged=merged_numbers,
            total=view.invoice.total_amount,
            due_date=view.invoice.due_date,
        )
        event = RenewalInvoiceUpdated(
            view=view,
            added_count=len(added),
            merged_invoice_numbers=merged_numbers,
            created=created,
        )
        return ConsolidationResult(
            invoice=view.invoice,
            added=added,
            skipped=skipped,
            merged_invoice_ids=[inv.id for inv in folded],
            events=[event],
        )
