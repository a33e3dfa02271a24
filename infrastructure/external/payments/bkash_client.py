"""
bKash tokenized checkout adapter over httpx.

Notes on the API (tokenized checkout v1.2.0-beta):
- ``token/grant`` exchanges app key/secret plus username/password headers for an ``id_token``
  valid for ``expires_in`` seconds; it is cached in-process and refreshed a minute early.
- Business calls send the token in ``Authorization`` and the app key in ``X-APP-Key``.
- bKash answers HTTP 200 for many failures; ``statusCode != "0000"`` is treated as an error.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    GatewayRefundRequest,
    GatewayRefundResult,
    InitPayment,
    PaymentInitResult,
)
from core.settings import BkashSettings, gateway_settings
from infrastructure.external.payments.base import BaseGatewayClient
from infrastructure.external.payments.exceptions import GatewayError

SUCCESS_CODE = "0000"
# 立即扣款
CHECKOUT_MODE = "0011"


class BkashClient(BaseGatewayClient):
    provider = "bkash"

    def __init__(
        self,
        config: Optional[BkashSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport=transport)
        self.config = config or gateway_settings.bkash
        if not all((self.config.app_key, self.config.app_secret, self.config.username, self.config.password)):
            raise RuntimeError("bKash credentials are not fully configured (GATEWAY__BKASH__*)")
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/tokenized/checkout/{path}"

    def _check(self, data: dict[str, Any], operation: str) -> dict[str, Any]:
        code = data.get("statusCode")
        if code is not None and code != SUCCESS_CODE:
            self._log("bkash_call_failed", operation=operation, status_code=code)
            raise GatewayError(
                self._error_message(data) or f"bKash {operation} failed",
                provider=self.provider,
                provider_code=str(code),
                details={"response": data},
            )
        return data

    async def _get_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        data = await self._post_json(
            self._url("token/grant"),
            json={"app_key": self.config.app_key, "app_secret": self.config.app_secret},
            headers={
                "username": self.config.username or "",
                "password": self.config.password or "",
                "accept": "application/json",
            },
        )
        token = data.get("id_token")
        if not token:
            raise GatewayError(
                self._error_message(data) or "Failed to generate bKash token",
                provider=self.provider,
                details={"response": data},
            )
        expires_in = int(data.get("expires_in") or 3600)
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        self._log("bkash_token_granted", expires_in=expires_in)
        return token

    async def _headers(self) -> dict[str, str]:
        return {
            "Authorization": await self._get_token(),
            "X-APP-Key": self.config.app_key or "",
            "Accept": "application/json",
        }

    async def init_payment(self, req: InitPayment) -> PaymentInitResult:  # type: ignore[override]
        payload = {
            "mode": CHECKOUT_MODE,
            "payerReference": req.reference,
            "callbackURL": req.callback_url or self.config.callback_url,
            "amount": str(req.amount),
            "currency": req.currency,
            "intent": "sale",
            "merchantInvoiceNumber": req.reference,
        }
        data = self._check(
            await self._post_json(self._url("create"), json=payload, headers=await self._headers()),
            "create",
        )
        payment_id = data.get("paymentID") or data.get("paymentId")
        if not payment_id:
            raise GatewayError(
                self._error_message(data) or "Failed to create bKash payment",
                provider=self.provider,
                details={"response": data},
            )
        self._log("bkash_payment_created", reference=req.reference, payment_id=payment_id)
        return PaymentInitResult(
            provider=self.provider,
            reference=req.reference,
            status=self._map_status(str(data.get("transactionStatus") or "Initiated")),
            redirect_url=data.get("bkashURL"),
            provider_ref=str(payment_id),
            raw=data,
        )

    async def execute_payment(self, payment_id: str) -> dict[str, Any]:
        """Callback step: capture the payment; the response carries ``trxID``."""
        data = self._check(
            await self._post_json(self._url("execute"), json={"paymentID": payment_id}, headers=await self._headers()),
            "execute",
        )
        status = self._map_status(str(data.get("transactionStatus") or ""))
        self._log("bkash_payment_executed", payment_id=payment_id, status=status, trx_id=data.get("trxID"))
        return {**data, "internalStatus": status}

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:  # type: ignore[override]
        payload = {
            "paymentID": req.gateway_payment_id or req.payment_ref,
            "trxID": req.payment_ref,
            "amount": str(req.amount),
            "sku": "refund",
            "reason": (req.reason or "Refund")[:255],
        }
        data = self._check(
            await self._post_json(self._url("payment/refund"), json=payload, headers=await self._headers()),
            "refund",
        )
        refund_ref = data.get("refundTrxID") or data.get("refundTrxId")
        if not refund_ref:
            raise GatewayError("bKash refund returned no refundTrxID", provider=self.provider, details={"response": data})
        self._log("bkash_refund_completed", trx_id=req.payment_ref, refund_ref=refund_ref)
        return GatewayRefundResult(
            refund_ref=str(refund_ref),
            status=self._map_status(str(data.get("transactionStatus") or "Completed")),
            provider=self.provider,
            raw=data,
        )
