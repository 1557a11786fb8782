import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from invoice_gateway.db import db_conn
from invoice_gateway.errors import AuditResult

logger = logging.getLogger(__name__)

# results that count against the hourly rate limits
COUNTED_RESULTS = (AuditResult.SUCCESS.value, AuditResult.FAILURE.value)

_FIELDS = (
    "correlation_id", "user_id", "user_email", "order_number", "customer_name",
    "customer_email", "amount_cents", "idempotency_key", "square_customer_id",
    "square_order_id", "square_invoice_id", "result", "error_code", "error_message",
    "request_timestamp", "steps_completed", "metadata",
)


@dataclass
class AuditEntry:
    correlation_id: str
    result: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    amount_cents: Optional[int] = None
    idempotency_key: Optional[str] = None
    square_customer_id: Optional[str] = None
    square_order_id: Optional[str] = None
    square_invoice_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    request_timestamp: Optional[str] = None
    steps_completed: Optional[List[str]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


class AuditLog:
    """Append-only `invoice_audit_log`. Also the source of the rate-limit counts."""

    def __init__(self, connect=db_conn):
        self.connect = connect

    def insert(self, entry: AuditEntry) -> None:
        values = asdict(entry)
        values["steps_completed"] = (
            json.dumps(entry.steps_completed) if entry.steps_completed is not None else None
        )
        values["metadata"] = json.dumps(entry.metadata or {})

        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO invoice_audit_log ({', '.join(_FIELDS)}) "
                    f"VALUES ({', '.join(['%s'] * len(_FIELDS))})",
                    [values[f] for f in _FIELDS],
                )

    def count_since(self, since: datetime, user_id: Optional[str] = None) -> int:
        """SUCCESS/FAILURE entries newer than `since`, for one user or globally."""
        q = "SELECT COUNT(*) FROM invoice_audit_log WHERE timestamp > %s AND result IN %s"
        params: list = [since, COUNTED_RESULTS]
        if user_id is not None:
            q += " AND user_id=%s"
            params.append(user_id)

        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(q, params)
                return int(cur.fetchone()[0])

    def search(
        self,
        correlation_id: Optional[str] = None,
        order_number: Optional[str] = None,
        result: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        q = f"SELECT timestamp, {', '.join(_FIELDS)} FROM invoice_audit_log"
        where, params = [], []
        if correlation_id:
            where.append("correlation_id=%s")
            params.append(correlation_id)
        if order_number:
            where.append("order_number=%s")
            params.append(order_number)
        if result:
            where.append("result=%s")
            params.append(result)
        if where:
            q += " WHERE " + " AND ".join(where)
        q += " ORDER BY timestamp DESC LIMIT %s"
        params.append(limit)

        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(q, params)
                rows = cur.fetchall()

        out = []
        for r in rows:
            item = dict(zip(("timestamp",) + _FIELDS, r))
            item["timestamp"] = r[0].isoformat() if r[0] else None
            out.append(item)
        return out


def log_audit(audit: AuditLog, entry: AuditEntry) -> None:
    """Best-effort write: a failing audit insert never changes the response."""
    try:
        audit.insert(entry)
    except Exception as e:
        logger.error(
            f"Failed to write audit log correlation_id={entry.correlation_id} "
            f"result={entry.result} err={e}"
        )
