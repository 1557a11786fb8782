"""
Invoice Saga
Drives customer -> order -> invoice -> publish against Square for one order.

There are no compensating transactions: a failed run leaves the ledger row in
`failed` with its progress, and the next request for the same order number
re-runs every step. Square's idempotency keys turn the repeated calls into
no-ops, so the re-run never creates a second customer, order or invoice.
"""

import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from invoice_gateway.errors import ErrorCode, SquareAPIError
from invoice_gateway.ledger import OrderLedger
from invoice_gateway.square import SquareClient

logger = logging.getLogger(__name__)


class Step(str, Enum):
    """Names written to processed_orders.steps_completed"""
    CUSTOMER_SEARCH = "customer_search"
    CUSTOMER_FOUND = "customer_found"
    CUSTOMER_CREATED = "customer_created"
    ORDER_CREATED = "order_created"
    INVOICE_CREATED = "invoice_created"
    INVOICE_PUBLISHED = "invoice_published"


class SagaStage(Enum):
    """Furthest milestone reached by the current attempt"""
    NOT_STARTED = 0
    CUSTOMER_SEARCHED = 1
    CUSTOMER_RESOLVED = 2
    ORDER_CREATED = 3
    INVOICE_CREATED = 4
    INVOICE_PUBLISHED = 5


def failure_code(stage: SagaStage) -> ErrorCode:
    """Map the last milestone reached to the code of the step that failed after it."""
    match stage:
        case SagaStage.NOT_STARTED:
            return ErrorCode.SQUARE_CUSTOMER_ERROR
        case SagaStage.CUSTOMER_SEARCHED | SagaStage.CUSTOMER_RESOLVED:
            # once the search is recorded, a failed create counts against the order step
            return ErrorCode.SQUARE_ORDER_ERROR
        case SagaStage.ORDER_CREATED:
            return ErrorCode.SQUARE_INVOICE_ERROR
        case SagaStage.INVOICE_CREATED:
            return ErrorCode.SQUARE_PUBLISH_ERROR
        case SagaStage.INVOICE_PUBLISHED:
            # nothing left to fail; reached only if bookkeeping after publish breaks
            return ErrorCode.SQUARE_API_ERROR


class SagaExecution:
    """Tracks one attempt at invoicing an order"""

    def __init__(self, order_number: str):
        self.order_number = order_number
        self.stage = SagaStage.NOT_STARTED
        self.steps_completed: List[str] = []
        self.square_customer_id: Optional[str] = None
        self.square_order_id: Optional[str] = None
        self.square_invoice_id: Optional[str] = None
        self.invoice_number: Optional[str] = None
        self.error: Optional[str] = None
        self.error_code: Optional[ErrorCode] = None

    def mark(self, step: Step, stage: Optional[SagaStage] = None):
        self.steps_completed.append(step.value)
        if stage is not None:
            self.stage = stage

    def square_ids(self) -> Dict[str, Optional[str]]:
        return {
            "square_customer_id": self.square_customer_id,
            "square_order_id": self.square_order_id,
            "square_invoice_id": self.square_invoice_id,
            "invoice_number": self.invoice_number,
        }


class InvoiceSagaOrchestrator:
    """
    Flow:
    1. Customer resolution (search by email, create if absent)
    2. Order creation (single line item, reference_id = order number)
    3. Invoice creation (net-30, emailed)
    4. Invoice publish (fetch version, then publish)

    The ledger row is updated after every step.
    """

    def __init__(
        self,
        square: SquareClient,
        ledger: OrderLedger,
        today: Callable[[], date] = lambda: datetime.now(timezone.utc).date(),
    ):
        self.square = square
        self.ledger = ledger
        self.today = today

    def execute(
        self,
        order_number: str,
        customer_name: str,
        customer_email: str,
        amount_cents: int,
    ) -> SagaExecution:
        execution = SagaExecution(order_number)
        logger.info(f"Saga started for order {order_number}")

        try:
            self._resolve_customer(execution, customer_name, customer_email)
            self._create_order(execution, amount_cents)
            self._create_invoice(execution)
            self._publish_invoice(execution)
        except Exception as e:
            execution.error = e.detail if isinstance(e, SquareAPIError) else str(e) or type(e).__name__
            execution.error_code = failure_code(execution.stage)

            logger.error(
                f"✗ Saga failed for order {order_number} at stage {execution.stage.name} "
                f"({execution.error_code.value}): {execution.error}"
            )
            self.ledger.mark_failed(
                order_number,
                execution.steps_completed,
                execution.error,
                **execution.square_ids(),
            )
            return execution

        self.ledger.mark_completed(order_number, execution.steps_completed, **execution.square_ids())
        logger.info(f"✓ Saga completed for order {order_number} (invoice={execution.square_invoice_id})")
        return execution

    # ---------------- steps ----------------
    def _resolve_customer(self, execution: SagaExecution, name: str, email: str):
        logger.info(f"Executing: customer resolution for order {execution.order_number}")
        existing = self.square.search_customer_by_email(email)
        execution.mark(Step.CUSTOMER_SEARCH, SagaStage.CUSTOMER_SEARCHED)

        if existing:
            execution.square_customer_id = existing["id"]
            execution.mark(Step.CUSTOMER_FOUND, SagaStage.CUSTOMER_RESOLVED)
        else:
            customer = self.square.create_customer(name, email, execution.order_number)
            execution.square_customer_id = customer["id"]
            execution.mark(Step.CUSTOMER_CREATED, SagaStage.CUSTOMER_RESOLVED)

        self._checkpoint(execution)

    def _create_order(self, execution: SagaExecution, amount_cents: int):
        logger.info(f"Executing: order creation for order {execution.order_number}")
        execution.square_order_id = self.square.create_order(
            execution.square_customer_id, amount_cents, execution.order_number
        )
        execution.mark(Step.ORDER_CREATED, SagaStage.ORDER_CREATED)
        self._checkpoint(execution)

    def _create_invoice(self, execution: SagaExecution):
        logger.info(f"Executing: invoice creation for order {execution.order_number}")
        invoice = self.square.create_invoice(
            execution.square_order_id,
            execution.square_customer_id,
            execution.order_number,
            self.today(),
        )
        execution.square_invoice_id = invoice.id
        execution.invoice_number = invoice.invoice_number
        execution.mark(Step.INVOICE_CREATED, SagaStage.INVOICE_CREATED)
        self._checkpoint(execution)

    def _publish_invoice(self, execution: SagaExecution):
        logger.info(f"Executing: invoice publish for order {execution.order_number}")
        published = self.square.publish_invoice(execution.square_invoice_id, execution.order_number)
        if not execution.invoice_number:
            execution.invoice_number = published.get("invoice_number")
        execution.mark(Step.INVOICE_PUBLISHED, SagaStage.INVOICE_PUBLISHED)

    def _checkpoint(self, execution: SagaExecution):
        self.ledger.record_progress(
            execution.order_number,
            execution.steps_completed,
            **execution.square_ids(),
        )
