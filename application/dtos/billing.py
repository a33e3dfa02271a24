"""
Billing command DTOs (Pydantic v2) accepted by BillingService.
"""
from __future__ import annotations

import json
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pydantic.types import condecimal

from domain.billing.consolidation import RenewalTargetKind
from domain.billing.refund_workflow import Role


class RecordPayment(BaseModel):
    invoice_id: int
    amount: condecimal(gt=0, decimal_places=2)  # type: ignore[valid-type]
    gateway: str = Field(min_length=1)
    external_tx_id: str = Field(min_length=1)
    raw_response: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("raw_response", mode="before")
    @classmethod
    def _serialize_raw(cls, v: Union[str, dict, list, None]) -> Optional[str]:
        """网关原始回包可以是 dict，统一存为 JSON 字符串"""
        if v is None or isinstance(v, str):
            return v
        return json.dumps(v, ensure_ascii=False, default=str)


class SubmitManualPayment(BaseModel):
    invoice_id: int
    amount: condecimal(gt=0, decimal_places=2)  # type: ignore[valid-type]
    external_tx_id: str = Field(min_length=1)  # bank reference
    gateway: str = "bank_transfer"
    notes: Optional[str] = None


class RenewalItem(BaseModel):
    kind: RenewalTargetKind
    item_id: int
    period: int = Field(default=1, ge=1)


class ConsolidateRenewals(BaseModel):
    client_id: int
    items: list[RenewalItem] = Field(min_length=1)


class RequestRefund(BaseModel):
    transaction_id: int
    amount: condecimal(gt=0, decimal_places=2)  # type: ignore[valid-type]
    reason: str = Field(min_length=1)
    actor_id: int
    role: Role


class RefundDecision(BaseModel):
    refund_id: int
    actor_id: int
    role: Role
    reason: Optional[str] = None

    def context(self) -> dict[str, Any]:
        return {"refund_id": self.refund_id, "actor_id": self.actor_id, "role": self.role.value}
