"""
Base gateway client implementing shared concerns: http, retry, logging, mapping.

Concrete gateways should subclass and implement provider-specific logic.
"""
from __future__ import annotations

from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import gateway_settings
from application.dtos.payments import (
    GatewayRefundRequest,
    GatewayRefundResult,
    InitPayment,
    PaymentInitResult,
)
from application.ports.payment_gateway import GatewayClient
from infrastructure.external.payments.exceptions import GatewayError, GatewayRecoverableError
from shared.codes.billing_codes import GATEWAY_STATUS_TO_INTERNAL


logger = get_logger(__name__)


class BaseGatewayClient(GatewayClient):
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or gateway_settings.timeouts.model_dump()
        self._retry_cfg = retry or {
            "max": gateway_settings.retry.max,
            "base": gateway_settings.retry.base_backoff,
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _post_json(self, url: str, *, json: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        """POST with transport retries; HTTP errors become gateway exceptions."""
        async def call() -> httpx.Response:
            async with self.client() as http:
                return await http.post(url, json=json, headers=headers)

        try:
            response = await self._retry(call)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise GatewayRecoverableError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc
        if response.status_code >= 500:
            raise GatewayRecoverableError(
                f"HTTP {response.status_code}", provider=self.provider, provider_code=str(response.status_code)
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("Invalid JSON response", provider=self.provider) from exc
        if response.status_code >= 400:
            raise GatewayError(
                self._error_message(data) or f"HTTP {response.status_code}",
                provider=self.provider,
                provider_code=str(response.status_code),
                details={"response": data},
            )
        return data

    # Default implementations raise to force override where needed
    async def init_payment(self, req: InitPayment) -> PaymentInitResult:  # type: ignore[override]
        raise NotImplementedError

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    @staticmethod
    def _error_message(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        return data.get("statusMessage") or data.get("errorMessage") or data.get("msg")

    def _map_status(self, provider_status: str) -> str:
        mapping = GATEWAY_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status, provider_status)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
