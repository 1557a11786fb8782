from fastapi import APIRouter, Depends

from invoice_gateway.deps import get_ledger, require_roles
from invoice_gateway.ledger import OrderLedger
from invoice_gateway.schemas import OrderStatusOut

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_number}", response_model=OrderStatusOut, response_model_exclude_none=True)
def order_status(
    order_number: str,
    user=Depends(require_roles("invoicer", "auditor")),
    ledger: OrderLedger = Depends(get_ledger),
):
    """Lets the extension tell whether an order was already invoiced."""
    record = ledger.get(order_number)
    if not record:
        return OrderStatusOut(exists=False)

    return OrderStatusOut(
        exists=True,
        order_number=record.order_number,
        status=record.status,
        square_invoice_id=record.square_invoice_id,
        invoice_number=record.invoice_number,
        completed_at=record.completed_at.isoformat() if record.completed_at else None,
        customer_name=record.customer_name,
        amount_cents=record.amount_cents,
        steps_completed=record.steps_completed,
    )
