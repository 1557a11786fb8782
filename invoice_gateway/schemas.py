import re
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

ORDER_NUMBER_RE = re.compile(r"[A-Za-z0-9-]{1,50}")
EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")


# ---------------- Core endpoint ----------------
class CreateInvoiceReq(BaseModel):
    """
    Inbound invoice request.

    Validate with `context={"max_amount_cents": ...}`; the error `type` of a
    failed rule is the error code the caller receives.
    """

    order_number: str
    customer_name: str
    customer_email: str
    amount_cents: int
    request_timestamp: str

    @field_validator("order_number", "customer_name", "customer_email", "request_timestamp", mode="before")
    @classmethod
    def _present(cls, v):
        if v is None or v == "":
            raise PydanticCustomError("blank", "Field required")
        return v

    @field_validator("order_number")
    @classmethod
    def _order_number(cls, v: str) -> str:
        if not ORDER_NUMBER_RE.fullmatch(v):
            raise PydanticCustomError("VALIDATION_INVALID_ORDER", "Invalid order number format")
        return v

    @field_validator("customer_email")
    @classmethod
    def _email(cls, v: str) -> str:
        if not EMAIL_RE.fullmatch(v):
            raise PydanticCustomError("VALIDATION_INVALID_EMAIL", "Invalid email format")
        return v

    @field_validator("amount_cents", mode="before")
    @classmethod
    def _amount(cls, v, info: ValidationInfo):
        # only an absent key is missing; null is a bad amount
        # JSON numbers like 3250.0 still count as integers
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        ceiling = (info.context or {}).get("max_amount_cents")
        if isinstance(v, bool) or not isinstance(v, int) or v <= 0 or (ceiling is not None and v > ceiling):
            raise PydanticCustomError(
                "VALIDATION_INVALID_AMOUNT",
                "Amount must be a positive integer not exceeding {ceiling} cents",
                {"ceiling": ceiling},
            )
        return v


class InvoiceData(BaseModel):
    square_customer_id: str
    square_order_id: str
    square_invoice_id: str
    invoice_number: Optional[str] = None


class ErrorBody(BaseModel):
    code: str
    message: str
    retry_after: Optional[int] = None


class InvoiceResponse(BaseModel):
    success: bool
    correlation_id: str
    data: Optional[InvoiceData] = None
    error: Optional[ErrorBody] = None


# ---------------- Auth ----------------
class LoginReq(BaseModel):
    email: EmailStr
    password: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ---------------- Orders / admin ----------------
class OrderStatusOut(BaseModel):
    """`steps_completed` is the union over all attempts, holding one customer resolution step."""
    exists: bool
    order_number: Optional[str] = None
    status: Optional[str] = None
    square_invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    completed_at: Optional[str] = None
    customer_name: Optional[str] = None
    amount_cents: Optional[int] = None
    steps_completed: Optional[List[str]] = None


class GrantRoleReq(BaseModel):
    user_id: str
    role: Literal["invoicer", "auditor"] = "invoicer"
