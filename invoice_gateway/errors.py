from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION_MISSING_FIELD = "VALIDATION_MISSING_FIELD"
    VALIDATION_INVALID_EMAIL = "VALIDATION_INVALID_EMAIL"
    VALIDATION_INVALID_AMOUNT = "VALIDATION_INVALID_AMOUNT"
    VALIDATION_INVALID_ORDER = "VALIDATION_INVALID_ORDER"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    RATE_LIMITED_USER = "RATE_LIMITED_USER"
    RATE_LIMITED_GLOBAL = "RATE_LIMITED_GLOBAL"
    REPLAY_REJECTED = "REPLAY_REJECTED"
    SQUARE_API_ERROR = "SQUARE_API_ERROR"
    SQUARE_CUSTOMER_ERROR = "SQUARE_CUSTOMER_ERROR"
    SQUARE_ORDER_ERROR = "SQUARE_ORDER_ERROR"
    SQUARE_INVOICE_ERROR = "SQUARE_INVOICE_ERROR"
    SQUARE_PUBLISH_ERROR = "SQUARE_PUBLISH_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AuditResult(str, Enum):
    """Values accepted by invoice_audit_log.result"""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    DUPLICATE_BLOCKED = "DUPLICATE_BLOCKED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTH_MISSING = "AUTH_MISSING"
    RATE_LIMITED = "RATE_LIMITED"
    REPLAY_REJECTED = "REPLAY_REJECTED"


class InvoiceRequestError(Exception):
    """
    A terminal rejection of an invoice request.

    `message` goes to the caller, `audit_message` (when given) goes to the
    audit log instead, so internal detail does not leak into the response.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int,
        audit_result: AuditResult,
        retry_after: Optional[int] = None,
        audit_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.audit_result = audit_result
        self.retry_after = retry_after
        self.audit_message = audit_message or message


class SquareAPIError(Exception):
    """Raised when the Square API reports errors or cannot be reached"""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class DuplicateOrderError(Exception):
    """Insert lost the race on processed_orders.order_number"""

    def __init__(self, order_number: str):
        super().__init__(f"Order {order_number} already exists")
        self.order_number = order_number


class ConfigurationError(Exception):
    pass
