"""
Order ledger: one `processed_orders` row per order number.

The UNIQUE constraint on order_number is what settles two concurrent first
requests for the same order; the loser's insert surfaces as DuplicateOrderError.
Every write is its own transaction so a crash between saga steps leaves a
partially-progressed row rather than a torn one.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import psycopg2.errors

from invoice_gateway.db import db_conn
from invoice_gateway.errors import DuplicateOrderError

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

_COLUMNS = (
    "order_number, user_id, status, square_customer_id, square_order_id, square_invoice_id, "
    "invoice_number, steps_completed, amount_cents, customer_name, customer_email, "
    "idempotency_key, error_message, created_at, updated_at, completed_at"
)

# Append steps not yet recorded, keeping their order. The stored list never shrinks.
# customer_found and customer_created are alternatives: the first one recorded wins.
_MERGE_STEPS = """
    steps_completed = steps_completed || COALESCE((
        SELECT jsonb_agg(s.step ORDER BY s.idx)
        FROM jsonb_array_elements_text(%s::jsonb) WITH ORDINALITY AS s(step, idx)
        WHERE NOT (processed_orders.steps_completed ? s.step)
          AND NOT (
            s.step IN ('customer_found', 'customer_created')
            AND processed_orders.steps_completed ?| ARRAY['customer_found', 'customer_created']
          )
    ), '[]'::jsonb)
"""


def idempotency_key_for(order_number: str) -> str:
    return f"cultivera-{order_number}"


@dataclass
class OrderRecord:
    order_number: str
    user_id: str
    status: str
    amount_cents: int
    customer_name: str
    customer_email: str
    idempotency_key: str
    square_customer_id: Optional[str] = None
    square_order_id: Optional[str] = None
    square_invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    steps_completed: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "OrderRecord":
        steps = row[7]
        if isinstance(steps, str):
            steps = json.loads(steps)
        return cls(
            order_number=row[0],
            user_id=row[1],
            status=row[2],
            square_customer_id=row[3],
            square_order_id=row[4],
            square_invoice_id=row[5],
            invoice_number=row[6],
            steps_completed=list(steps or []),
            amount_cents=row[8],
            customer_name=row[9],
            customer_email=row[10],
            idempotency_key=row[11],
            error_message=row[12],
            created_at=row[13],
            updated_at=row[14],
            completed_at=row[15],
        )


class OrderLedger:
    def __init__(self, connect=db_conn):
        self.connect = connect

    def get(self, order_number: str) -> Optional[OrderRecord]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM processed_orders WHERE order_number=%s",
                    (order_number,),
                )
                row = cur.fetchone()
        return OrderRecord.from_row(row) if row else None

    def create(
        self,
        order_number: str,
        user_id: str,
        amount_cents: int,
        customer_name: str,
        customer_email: str,
    ) -> OrderRecord:
        """Insert a new record in `processing`. Raises DuplicateOrderError if the order number exists."""
        key = idempotency_key_for(order_number)
        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO processed_orders
                            (order_number, user_id, status, amount_cents, customer_name, customer_email, idempotency_key)
                        VALUES (%s,%s,%s,%s,%s,%s,%s)
                        """,
                        (order_number, user_id, PROCESSING, amount_cents, customer_name, customer_email, key),
                    )
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateOrderError(order_number) from e

        return OrderRecord(
            order_number=order_number,
            user_id=user_id,
            status=PROCESSING,
            amount_cents=amount_cents,
            customer_name=customer_name,
            customer_email=customer_email,
            idempotency_key=key,
        )

    def reopen(self, order_number: str) -> bool:
        """
        Put a non-completed record back into `processing`.

        Returns False when the record completed in the meantime.
        """
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE processed_orders
                    SET status=%s, updated_at=NOW()
                    WHERE order_number=%s AND status <> %s
                    """,
                    (PROCESSING, order_number, COMPLETED),
                )
                return cur.rowcount == 1

    def record_progress(self, order_number: str, steps: Sequence[str], **square_ids) -> None:
        self._update(order_number, steps, square_ids)

    def mark_completed(self, order_number: str, steps: Sequence[str], **square_ids) -> None:
        self._update(order_number, steps, square_ids, status=COMPLETED)

    def mark_failed(self, order_number: str, steps: Sequence[str], error_message: str, **square_ids) -> None:
        self._update(order_number, steps, square_ids, status=FAILED, error_message=error_message)

    def _update(
        self,
        order_number: str,
        steps: Sequence[str],
        square_ids: Dict[str, Optional[str]],
        status: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        assignments = [_MERGE_STEPS]
        params: list = [json.dumps(list(steps))]

        for column in ("square_customer_id", "square_order_id", "square_invoice_id", "invoice_number"):
            value = square_ids.get(column)
            if value is not None:
                assignments.append(f"{column}=%s")
                params.append(value)

        if status is not None:
            assignments.append("status=%s")
            params.append(status)
        if status == COMPLETED:
            assignments.append("completed_at=NOW()")
        if error_message is not None:
            assignments.append("error_message=%s")
            params.append(error_message)

        assignments.append("updated_at=NOW()")
        # completed is terminal
        params.extend([order_number, COMPLETED])

        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE processed_orders SET {', '.join(assignments)} "
                    "WHERE order_number=%s AND status <> %s",
                    params,
                )
                if cur.rowcount != 1:
                    logger.warning(f"Ledger update skipped for order {order_number} (status={status})")

    def count_by_status(self) -> Dict[str, int]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status, COUNT(*) FROM processed_orders GROUP BY status")
                rows = cur.fetchall()
        counts = {s: 0 for s in (PENDING, PROCESSING, COMPLETED, FAILED)}
        counts.update({r[0]: r[1] for r in rows})
        return counts
