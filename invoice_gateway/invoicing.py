"""
Invoice request orchestration.

auth -> authorization -> validation -> replay window -> rate limits ->
ledger claim -> saga -> ledger + audit. Every exit writes exactly one audit
entry carrying the correlation id returned to the caller.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from invoice_gateway import config
from invoice_gateway.errors import (
    AuditResult,
    ConfigurationError,
    DuplicateOrderError,
    ErrorCode,
    InvoiceRequestError,
)
from invoice_gateway.ledger import COMPLETED, OrderLedger, idempotency_key_for
from invoice_gateway.saga import InvoiceSagaOrchestrator, SagaExecution
from invoice_gateway.schemas import CreateInvoiceReq, ErrorBody, InvoiceData, InvoiceResponse
from invoice_gateway.security import Caller, IdentityProvider, TokenError, bearer_token
from invoice_gateway.utils.audit import AuditEntry, AuditLog, log_audit
from invoice_gateway.utils.guards import RateLimiter, check_replay, validate_invoice_request

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RequestContext:
    """What is known about the request so far; snapshotted into the audit entry."""
    correlation_id: str
    caller: Optional[Caller] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    execution: Optional[SagaExecution] = None

    def audit_entry(self, result: AuditResult, error_code: Optional[str] = None,
                    error_message: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(
            correlation_id=self.correlation_id,
            result=result.value,
            user_id=self.caller.id if self.caller else None,
            user_email=self.caller.email if self.caller else None,
            error_code=error_code,
            error_message=error_message,
            **self.fields,
        )
        if self.execution is not None:
            entry.steps_completed = list(self.execution.steps_completed)
            entry.square_customer_id = self.execution.square_customer_id
            entry.square_order_id = self.execution.square_order_id
            entry.square_invoice_id = self.execution.square_invoice_id
            entry.metadata = {"invoice_number": self.execution.invoice_number} if self.execution.invoice_number else {}
        return entry


class InvoiceRequestHandler:
    def __init__(
        self,
        identity: IdentityProvider,
        accounts,
        ledger: OrderLedger,
        audit: AuditLog,
        square=None,
        max_amount_cents: int = config.MAX_AMOUNT_CENTS,
        user_rate_limit: int = config.USER_RATE_LIMIT,
        global_rate_limit: int = config.GLOBAL_RATE_LIMIT,
        replay_window_seconds: float = config.REPLAY_WINDOW_SECONDS,
        replay_future_skew_seconds: float = config.REPLAY_FUTURE_SKEW_SECONDS,
        now: Callable[[], datetime] = utcnow,
    ):
        self.identity = identity
        self.accounts = accounts
        self.ledger = ledger
        self.audit = audit
        self.square = square
        self.max_amount_cents = max_amount_cents
        self.replay_window_seconds = replay_window_seconds
        self.replay_future_skew_seconds = replay_future_skew_seconds
        self.rate_limiter = RateLimiter(audit, user_rate_limit, global_rate_limit)
        self.now = now

    # ---------------- entry point ----------------
    def handle(self, authorization: Optional[str], body: bytes, correlation_id: str) -> Tuple[int, Dict[str, Any]]:
        """Returns (status_code, response body)."""
        ctx = RequestContext(correlation_id)
        try:
            return self._process(ctx, authorization, body)
        except InvoiceRequestError as e:
            log_audit(self.audit, ctx.audit_entry(e.audit_result, e.code.value, e.audit_message))
            logger.info(
                f"Invoice request rejected correlation_id={correlation_id} "
                f"code={e.code.value} status={e.status_code}"
            )
            return e.status_code, self._error_body(correlation_id, e.code, e.message, e.retry_after)
        except ConfigurationError as e:
            logger.error(f"Server misconfigured correlation_id={correlation_id}: {e}")
            log_audit(self.audit, ctx.audit_entry(AuditResult.FAILURE, ErrorCode.INTERNAL_ERROR.value, str(e)))
            return 500, self._error_body(correlation_id, ErrorCode.INTERNAL_ERROR, "Server configuration error")
        except Exception as e:
            logger.exception(f"Unexpected error correlation_id={correlation_id}: {e}")
            log_audit(
                self.audit,
                ctx.audit_entry(AuditResult.FAILURE, ErrorCode.INTERNAL_ERROR.value, str(e) or type(e).__name__),
            )
            return 500, self._error_body(
                correlation_id, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred. Please try again."
            )

    def _process(self, ctx: RequestContext, authorization: Optional[str], body: bytes):
        if self.square is None:
            raise ConfigurationError("Square client not configured")

        ctx.caller = self._authenticate(authorization)
        self._authorize(ctx.caller)

        payload = self._parse_body(body)
        if isinstance(payload, dict):
            ctx.fields["order_number"] = _as_text(payload.get("order_number"))
        req = validate_invoice_request(payload, self.max_amount_cents)
        ctx.fields.update(
            order_number=req.order_number,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            amount_cents=req.amount_cents,
            request_timestamp=req.request_timestamp,
        )

        now = self.now()
        check_replay(req.request_timestamp, now, self.replay_window_seconds, self.replay_future_skew_seconds)
        self.rate_limiter.check(ctx.caller.id, now)

        self._claim_order(ctx, req)
        ctx.fields["idempotency_key"] = idempotency_key_for(req.order_number)

        saga = InvoiceSagaOrchestrator(self.square, self.ledger, today=lambda: now.date())
        ctx.execution = saga.execute(req.order_number, req.customer_name, req.customer_email, req.amount_cents)

        if ctx.execution.error_code is not None:
            raise InvoiceRequestError(
                ctx.execution.error_code,
                "Invoice creation did not complete. Click 'Try Again' to retry safely. "
                f"Error: {ctx.execution.error}",
                500,
                AuditResult.FAILURE,
                audit_message=ctx.execution.error,
            )

        log_audit(self.audit, ctx.audit_entry(AuditResult.SUCCESS))
        logger.info(
            f"Invoice published correlation_id={ctx.correlation_id} order={req.order_number} "
            f"invoice={ctx.execution.square_invoice_id}"
        )
        response = InvoiceResponse(
            success=True,
            correlation_id=ctx.correlation_id,
            data=InvoiceData(
                square_customer_id=ctx.execution.square_customer_id,
                square_order_id=ctx.execution.square_order_id,
                square_invoice_id=ctx.execution.square_invoice_id,
                invoice_number=ctx.execution.invoice_number,
            ),
        )
        return 200, response.model_dump(exclude_none=True)

    # ---------------- gates ----------------
    def _authenticate(self, authorization: Optional[str]) -> Caller:
        token = bearer_token(authorization)
        if token is None:
            raise InvoiceRequestError(
                ErrorCode.AUTH_MISSING,
                "Authentication required",
                401,
                AuditResult.AUTH_MISSING,
                audit_message="No authorization header provided",
            )
        try:
            return self.identity.verify(token)
        except TokenError as e:
            if e.expired:
                code, message = ErrorCode.AUTH_EXPIRED, "Session expired. Please sign in again."
            else:
                code, message = ErrorCode.AUTH_INVALID, "Invalid authentication"
            raise InvoiceRequestError(code, message, 401, AuditResult.AUTH_MISSING, audit_message=str(e))

    def _authorize(self, caller: Caller):
        if not self.accounts.is_authorized_invoicer(caller.id):
            raise InvoiceRequestError(
                ErrorCode.UNAUTHORIZED,
                "Your account is not authorized to create invoices. Contact your admin for access.",
                403,
                AuditResult.UNAUTHORIZED,
                audit_message="User is not authorized to create invoices",
            )

    def _parse_body(self, body: bytes) -> Any:
        try:
            return json.loads(body or b"")
        except ValueError:
            raise InvoiceRequestError(
                ErrorCode.VALIDATION_MISSING_FIELD,
                "Invalid request body",
                400,
                AuditResult.VALIDATION_FAILED,
                audit_message="Invalid JSON body",
            )

    def _claim_order(self, ctx: RequestContext, req: CreateInvoiceReq):
        """
        Create the ledger row, or reopen a non-completed one for a retry.
        A completed row, or losing the insert race, is a duplicate.
        """
        existing = self.ledger.get(req.order_number)

        if existing and existing.status == COMPLETED:
            ctx.fields["square_invoice_id"] = existing.square_invoice_id
            raise self._duplicate_completed(req.order_number, existing.completed_at)

        if existing:
            if not self.ledger.reopen(req.order_number):
                raise self._duplicate_completed(req.order_number, None)
            logger.info(f"Retrying order {req.order_number} (previous status={existing.status})")
            return

        try:
            self.ledger.create(
                req.order_number,
                ctx.caller.id,
                req.amount_cents,
                req.customer_name,
                req.customer_email,
            )
        except DuplicateOrderError:
            raise InvoiceRequestError(
                ErrorCode.DUPLICATE_ORDER,
                "This order is already being processed. Please wait a moment.",
                409,
                AuditResult.DUPLICATE_BLOCKED,
                audit_message="Order being processed by another request",
            )

    @staticmethod
    def _duplicate_completed(order_number: str, completed_at: Optional[datetime]) -> InvoiceRequestError:
        when = completed_at.isoformat() if completed_at else "a concurrent request"
        return InvoiceRequestError(
            ErrorCode.DUPLICATE_ORDER,
            f"Invoice already sent for order #{order_number}. View in Square Dashboard.",
            409,
            AuditResult.DUPLICATE_BLOCKED,
            audit_message=f"Order already processed on {when}",
        )

    @staticmethod
    def _error_body(correlation_id: str, code: ErrorCode, message: str,
                    retry_after: Optional[int] = None) -> Dict[str, Any]:
        response = InvoiceResponse(
            success=False,
            correlation_id=correlation_id,
            error=ErrorBody(code=code.value, message=message, retry_after=retry_after),
        )
        return response.model_dump(exclude_none=True)


def _as_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None
