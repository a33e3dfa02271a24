"""
Gateway client port (application/ports) exposing a replaceable protocol.

Only gateways with a refund API have a client; manual methods (bank transfer, cash) have none.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.payments import (
    GatewayRefundRequest,
    GatewayRefundResult,
    InitPayment,
    PaymentInitResult,
)


@runtime_checkable
class GatewayClient(Protocol):
    """Gateway protocol for third-party payment providers.

    Implementations should be async and side-effect free beyond IO.
    """

    provider: str

    async def init_payment(self, req: InitPayment) -> PaymentInitResult: ...

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult: ...

    async def aclose(self) -> None: ...
