"""
Cross-cutting error codes; billing errors live in ``shared.codes.billing_codes``.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    # Validation (1xxxx)
    PARAM_VALIDATION_ERROR = 10003

    # Authorization (3xxxx)
    FORBIDDEN = 30002


__all__ = ["BusinessCode"]
