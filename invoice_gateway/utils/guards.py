"""
Request gates run before any ledger write or Square call:
validation, replay window, hourly rate limits.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from pydantic import ValidationError

from invoice_gateway.errors import AuditResult, ErrorCode, InvoiceRequestError
from invoice_gateway.schemas import CreateInvoiceReq

REQUIRED_FIELDS = ("order_number", "customer_name", "customer_email", "amount_cents", "request_timestamp")

# field -> code reported when the field fails a type or format check
_FIELD_CODES = {
    "order_number": ErrorCode.VALIDATION_INVALID_ORDER,
    "customer_email": ErrorCode.VALIDATION_INVALID_EMAIL,
    "amount_cents": ErrorCode.VALIDATION_INVALID_AMOUNT,
}

_MESSAGES = {
    ErrorCode.VALIDATION_INVALID_ORDER: "Invalid order number format",
    ErrorCode.VALIDATION_INVALID_EMAIL: "Invalid customer email format",
}


def _validation_error(code: ErrorCode, message: str, audit_message: str | None = None) -> InvoiceRequestError:
    return InvoiceRequestError(
        code,
        message,
        400,
        AuditResult.VALIDATION_FAILED,
        audit_message=audit_message,
    )


def validate_invoice_request(payload: Any, max_amount_cents: int) -> CreateInvoiceReq:
    """
    Check presence, then order number, email and amount, in that order.

    Raises InvoiceRequestError carrying the first failing rule's code.
    """
    if not isinstance(payload, dict):
        raise _validation_error(
            ErrorCode.VALIDATION_MISSING_FIELD, "Invalid request body", audit_message="Invalid JSON body"
        )

    try:
        return CreateInvoiceReq.model_validate(payload, context={"max_amount_cents": max_amount_cents})
    except ValidationError as e:
        errors: Dict[str, str] = {}
        for err in e.errors():
            if err["loc"]:
                errors.setdefault(str(err["loc"][0]), err["type"])

    missing = [f for f in REQUIRED_FIELDS if errors.get(f) in ("missing", "blank")]
    if missing:
        msg = f"Missing required fields: {', '.join(missing)}"
        raise _validation_error(ErrorCode.VALIDATION_MISSING_FIELD, msg)

    for field_name in REQUIRED_FIELDS:
        if field_name not in errors:
            continue
        code = _FIELD_CODES.get(field_name)
        if code is None:
            raise _validation_error(
                ErrorCode.VALIDATION_MISSING_FIELD,
                f"Invalid value for {field_name}",
            )
        if code is ErrorCode.VALIDATION_INVALID_AMOUNT:
            raise _validation_error(
                code,
                f"Amount appears invalid (must be positive and not exceed ${max_amount_cents / 100:,.0f})",
                audit_message=f"Amount must be a positive integer not exceeding {max_amount_cents} cents",
            )
        raise _validation_error(code, _MESSAGES[code])

    # every error is keyed to a field above
    raise _validation_error(ErrorCode.VALIDATION_MISSING_FIELD, "Invalid request body")


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def check_replay(
    request_timestamp: str,
    now: datetime,
    window_seconds: float,
    future_skew_seconds: float,
) -> float:
    """
    Accept only -future_skew <= age <= window. Returns the age in seconds.
    """
    try:
        age = (now - parse_timestamp(request_timestamp)).total_seconds()
    except (ValueError, TypeError, AttributeError):
        raise InvoiceRequestError(
            ErrorCode.REPLAY_REJECTED,
            "Request expired. Please try again.",
            400,
            AuditResult.REPLAY_REJECTED,
            audit_message=f"Unparseable request timestamp: {request_timestamp!r}",
        )

    if age > window_seconds or age < -future_skew_seconds:
        raise InvoiceRequestError(
            ErrorCode.REPLAY_REJECTED,
            "Request expired. Please try again.",
            400,
            AuditResult.REPLAY_REJECTED,
            audit_message=f"Request timestamp outside acceptable window ({age:.1f}s old)",
        )
    return age


class RateLimiter:
    """
    Sliding one-hour counters over the audit log.

    The per-user check runs first, so a user block is reported even when the
    global limit is also hit.
    """

    USER_RETRY_AFTER = 3600
    GLOBAL_RETRY_AFTER = 300
    WINDOW = timedelta(hours=1)

    def __init__(self, audit, user_limit: int, global_limit: int):
        self.audit = audit
        self.user_limit = user_limit
        self.global_limit = global_limit

    def check(self, user_id: str, now: datetime) -> None:
        since = now - self.WINDOW

        user_count = self.audit.count_since(since, user_id=user_id)
        if user_count >= self.user_limit:
            raise InvoiceRequestError(
                ErrorCode.RATE_LIMITED_USER,
                "Too many requests. Please wait before trying again.",
                429,
                AuditResult.RATE_LIMITED,
                retry_after=self.USER_RETRY_AFTER,
                audit_message=f"User rate limit exceeded: {user_count}/{self.user_limit} per hour",
            )

        global_count = self.audit.count_since(since)
        if global_count >= self.global_limit:
            raise InvoiceRequestError(
                ErrorCode.RATE_LIMITED_GLOBAL,
                "System is busy. Please wait a few minutes before trying again.",
                429,
                AuditResult.RATE_LIMITED,
                retry_after=self.GLOBAL_RETRY_AFTER,
                audit_message=f"Global rate limit exceeded: {global_count}/{self.global_limit} per hour",
            )
