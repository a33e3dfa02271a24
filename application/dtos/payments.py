"""
Gateway DTOs (Pydantic v2) used at the gateway-client boundary.
"""
from __future__ import annotations

from typing import Any, Optional
from pydantic import BaseModel, Field
from pydantic.types import condecimal


class InitPayment(BaseModel):
    amount: condecimal(gt=0, decimal_places=2)  # type: ignore[valid-type]
    reference: str = Field(min_length=1)  # invoice number
    currency: str = Field(default="BDT")
    callback_url: Optional[str] = None
    idempotency_key: Optional[str] = None


class PaymentInitResult(BaseModel):
    provider: str
    reference: str
    status: str
    redirect_url: Optional[str] = None
    token: Optional[str] = None
    provider_ref: Optional[str] = None
    raw: Optional[dict[str, Any]] = None


class GatewayRefundRequest(BaseModel):
    payment_ref: str = Field(min_length=1)  # original external transaction id
    gateway_payment_id: Optional[str] = None  # gateway-side payment id where the refund API needs it
    amount: condecimal(gt=0, decimal_places=2)  # type: ignore[valid-type]
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


class GatewayRefundResult(BaseModel):
    refund_ref: str
    status: str
    provider: str
    raw: Optional[dict[str, Any]] = None
