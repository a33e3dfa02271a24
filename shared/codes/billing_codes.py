"""
Billing specific codes and gateway status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class BillingCode(IntEnum):
    # Invoice (70xxx)
    INVOICE_NOT_FOUND = 70000
    INVOICE_ALREADY_PAID = 70001
    INVOICE_NOT_PAYABLE = 70002
    PAYMENT_EXCEEDS_BALANCE = 70003
    INVALID_STATUS_TRANSITION = 70004

    # Transactions / refunds (71xxx)
    TRANSACTION_NOT_FOUND = 71000
    TRANSACTION_NOT_REFUNDABLE = 71001
    REFUND_NOT_FOUND = 71002
    REFUND_EXCEEDS_BALANCE = 71003

    # Related aggregates (72xxx)
    CLIENT_NOT_FOUND = 72000
    ORDER_NOT_FOUND = 72001

    # Conflicts (73xxx), retryable
    DUPLICATE_TRANSACTION = 73000
    CONCURRENCY_CONFLICT = 73001
    INVOICE_NUMBER_CONFLICT = 73002

    # Gateway (74xxx)
    GATEWAY_ERROR = 74000
    GATEWAY_RECOVERABLE = 74001


# Gateway→internal transaction status mapping (extend per needs)
GATEWAY_STATUS_TO_INTERNAL = {
    "bkash": {
        "Initiated": "pending",
        "Completed": "success",
        "Cancelled": "failed",
        "Failed": "failed",
    },
}
