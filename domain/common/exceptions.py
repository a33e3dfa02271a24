"""领域层业务异常定义，供领域、应用与基础设施使用。

Validation errors are raised synchronously before anything is mutated; conflict errors
carry ``retryable=True`` so callers can re-fetch and retry or treat the operation as
already applied.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.billing_codes import BillingCode


class BusinessException(Exception):
    """业务异常基类"""

    retryable: bool = False

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
        format_params: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key
        self.format_params = format_params
        super().__init__(self.message)


class ConflictException(BusinessException):
    """Retryable conflict: re-fetch and retry, or treat as already applied."""

    retryable = True


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        message_key: str | None = None,
        format_params: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
            message_key=message_key or "validation.domain",
            format_params=format_params,
        )


class InvalidStatusTransitionException(BusinessException):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            code=BillingCode.INVALID_STATUS_TRANSITION,
            message=f"Illegal {entity} status transition: {current} -> {target}",
            error_type="InvalidStatusTransition",
            details={"entity": entity, "current": current, "target": target},
            field="status",
            message_key="billing.status.invalid_transition",
        )


class PermissionDeniedException(BusinessException):
    def __init__(self, action: str, role: str):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message=f"Role {role} may not {action}",
            error_type="PermissionDenied",
            details={"action": action, "role": role},
            message_key="auth.forbidden",
        )


class InvoiceNotFoundException(BusinessException):
    def __init__(self, invoice_id: Optional[int] = None):
        details = {"invoice_id": invoice_id} if invoice_id is not None else None
        super().__init__(
            code=BillingCode.INVOICE_NOT_FOUND,
            message="Invoice not found",
            error_type="InvoiceNotFound",
            details=details,
            message_key="invoice.not_found",
        )


class InvoiceAlreadyPaidException(BusinessException):
    def __init__(self, invoice_id: int, status: str):
        super().__init__(
            code=BillingCode.INVOICE_ALREADY_PAID,
            message=f"Invoice {invoice_id} is {status} and cannot accept payments",
            error_type="InvoiceAlreadyPaid",
            details={"invoice_id": invoice_id, "status": status},
            message_key="invoice.already_paid",
        )


class InvoiceNotPayableException(BusinessException):
    def __init__(self, invoice_id: int, reason: str):
        super().__init__(
            code=BillingCode.INVOICE_NOT_PAYABLE,
            message=f"Invoice {invoice_id} cannot accept payments: {reason}",
            error_type="InvoiceNotPayable",
            details={"invoice_id": invoice_id, "reason": reason},
            message_key="invoice.not_payable",
        )


class PaymentExceedsBalanceException(BusinessException):
    def __init__(self, amount: Decimal, outstanding: Decimal):
        super().__init__(
            code=BillingCode.PAYMENT_EXCEEDS_BALANCE,
            message=f"Payment {amount} exceeds outstanding balance {outstanding}",
            error_type="PaymentExceedsBalance",
            details={"amount": str(amount), "outstanding": str(outstanding)},
            field="amount",
            message_key="payment.exceeds_balance",
        )


class TransactionNotFoundException(BusinessException):
    def __init__(self, transaction_id: Optional[int] = None):
        details = {"transaction_id": transaction_id} if transaction_id is not None else None
        super().__init__(
            code=BillingCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details=details,
            message_key="transaction.not_found",
        )


class TransactionNotRefundableException(BusinessException):
    def __init__(self, transaction_id: int, reason: str):
        super().__init__(
            code=BillingCode.TRANSACTION_NOT_REFUNDABLE,
            message=f"Transaction {transaction_id} cannot be refunded: {reason}",
            error_type="TransactionNotRefundable",
            details={"transaction_id": transaction_id, "reason": reason},
            message_key="transaction.not_refundable",
        )


class RefundNotFoundException(BusinessException):
    def __init__(self, refund_id: Optional[int] = None):
        details = {"refund_id": refund_id} if refund_id is not None else None
        super().__init__(
            code=BillingCode.REFUND_NOT_FOUND,
            message="Refund request not found",
            error_type="RefundNotFound",
            details=details,
            message_key="refund.not_found",
        )


class RefundExceedsBalanceException(BusinessException):
    """退款金额超过可退余额"""

    def __init__(self, requested: Decimal, committed: Decimal, ceiling: Decimal):
        super().__init__(
            code=BillingCode.REFUND_EXCEEDS_BALANCE,
            message=(
                f"Requested refund {requested} exceeds refundable balance. "
                f"Refunded/Pending: {committed}, Max: {ceiling}"
            ),
            error_type="RefundExceedsBalance",
            details={
                "requested": str(requested),
                "committed": str(committed),
                "ceiling": str(ceiling),
            },
            field="amount",
            message_key="refund.exceeds_balance",
        )


class ClientNotFoundException(BusinessException):
    def __init__(self, client_id: Optional[int] = None):
        details = {"client_id": client_id} if client_id is not None else None
        super().__init__(
            code=BillingCode.CLIENT_NOT_FOUND,
            message="Client not found",
            error_type="ClientNotFound",
            details=details,
            message_key="client.not_found",
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: Optional[int] = None):
        details = {"order_id": order_id} if order_id is not None else None
        super().__init__(
            code=BillingCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details=details,
            message_key="order.not_found",
        )


class DuplicateTransactionException(ConflictException):
    def __init__(self, external_tx_id: str):
        super().__init__(
            code=BillingCode.DUPLICATE_TRANSACTION,
            message=f"Transaction {external_tx_id} has already been recorded",
            error_type="DuplicateTransaction",
            details={"external_tx_id": external_tx_id},
            field="external_tx_id",
            message_key="transaction.duplicate",
        )


class ConcurrencyConflictException(ConflictException):
    def __init__(self, resource: str, detail: Optional[str] = None):
        super().__init__(
            code=BillingCode.CONCURRENCY_CONFLICT,
            message=f"Concurrent modification of {resource}",
            error_type="ConcurrencyConflict",
            details={"resource": resource, "detail": detail} if detail else {"resource": resource},
            message_key="billing.concurrency_conflict",
        )


class InvoiceNumberConflictException(ConflictException):
    """发票号在并发创建中被占用，重试时重新生成"""

    def __init__(self, invoice_number: str):
        super().__init__(
            code=BillingCode.INVOICE_NUMBER_CONFLICT,
            message=f"Invoice number {invoice_number} is already taken",
            error_type="InvoiceNumberConflict",
            details={"invoice_number": invoice_number},
            field="invoice_number",
            message_key="invoice.number_conflict",
        )
