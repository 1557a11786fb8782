import uuid

from fastapi import APIRouter, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from invoice_gateway.deps import get_invoice_handler
from invoice_gateway.errors import ErrorCode
from invoice_gateway.invoicing import InvoiceRequestHandler

router = APIRouter(prefix="/functions/v1", tags=["invoices"])

INVOICE_PATH = "/create-square-invoice"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def json_response(body: dict, status_code: int, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        body,
        status_code=status_code,
        headers={**CORS_HEADERS, "X-Correlation-ID": correlation_id},
    )


@router.options(INVOICE_PATH)
def preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post(INVOICE_PATH)
async def create_square_invoice(request: Request, handler: InvoiceRequestHandler = Depends(get_invoice_handler)):
    """
    Create and publish a Square invoice for one order.

    The body is read raw so that malformed JSON, missing fields and bad
    credentials all come back in the same envelope, in gate order.
    """
    correlation_id = str(uuid.uuid4())
    body = await request.body()

    # blocking DB + Square calls. A client disconnect does not cancel the
    # worker thread; the saga runs to its end and a retry replays the same
    # idempotency keys.
    status_code, payload = await run_in_threadpool(
        handler.handle, request.headers.get("Authorization"), body, correlation_id
    )
    return json_response(payload, status_code, correlation_id)


@router.api_route(INVOICE_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def method_not_allowed():
    correlation_id = str(uuid.uuid4())
    body = {
        "success": False,
        "correlation_id": correlation_id,
        "error": {"code": ErrorCode.INTERNAL_ERROR.value, "message": "Method not allowed"},
    }
    return json_response(body, 405, correlation_id)
