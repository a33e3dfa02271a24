"""
Exceptions for payment gateways mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.billing_codes import BillingCode


class GatewayError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=BillingCode.GATEWAY_ERROR,
            message=message,
            error_type="GatewayError",
            details=full_details,
        )


class GatewayRecoverableError(BusinessException):
    retryable = True

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=BillingCode.GATEWAY_RECOVERABLE,
            message=message,
            error_type="GatewayRecoverableError",
            details=full_details,
        )
