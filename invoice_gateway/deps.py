from fastapi import Depends, Header, HTTPException, Request

from invoice_gateway.accounts import AccountDirectory
from invoice_gateway.invoicing import InvoiceRequestHandler
from invoice_gateway.ledger import OrderLedger
from invoice_gateway.security import Caller, IdentityProvider, TokenError, bearer_token
from invoice_gateway.utils.audit import AuditLog


# ---------------- collaborators ----------------
def get_accounts() -> AccountDirectory:
    return AccountDirectory()


def get_ledger() -> OrderLedger:
    return OrderLedger()


def get_audit_log() -> AuditLog:
    return AuditLog()


def get_square_client(request: Request):
    """Process-wide client built in the app lifespan; None when Square is not configured."""
    return getattr(request.app.state, "square", None)


def get_invoice_handler(
    accounts: AccountDirectory = Depends(get_accounts),
    ledger: OrderLedger = Depends(get_ledger),
    audit: AuditLog = Depends(get_audit_log),
    square=Depends(get_square_client),
) -> InvoiceRequestHandler:
    return InvoiceRequestHandler(
        identity=IdentityProvider(accounts),
        accounts=accounts,
        ledger=ledger,
        audit=audit,
        square=square,
    )


# ---------------- auth for secondary routes ----------------
def get_current_user(
    authorization: str = Header(None),
    accounts: AccountDirectory = Depends(get_accounts),
) -> dict:
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        caller: Caller = IdentityProvider(accounts).verify(token)
    except TokenError as e:
        raise HTTPException(status_code=401, detail="Session expired" if e.expired else "Invalid token")

    return {
        "id": caller.id,
        "email": caller.email,
        "roles": accounts.active_roles(caller.id),
    }


def require_roles(*roles: str):
    def checker(user: dict = Depends(get_current_user)) -> dict:
        if not set(roles) & set(user["roles"]):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return checker
