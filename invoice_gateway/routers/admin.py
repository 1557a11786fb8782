from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query

from invoice_gateway.accounts import AccountDirectory, RoleAlreadyGranted
from invoice_gateway.deps import get_accounts, get_audit_log, get_ledger, require_roles
from invoice_gateway.errors import AuditResult
from invoice_gateway.ledger import OrderLedger
from invoice_gateway.schemas import GrantRoleReq
from invoice_gateway.utils.audit import AuditLog

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/invoicers", status_code=201)
def grant_role(
    body: GrantRoleReq,
    user=Depends(require_roles("auditor")),
    accounts: AccountDirectory = Depends(get_accounts),
):
    if not accounts.get_user(body.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    try:
        accounts.grant_role(body.user_id, body.role, granted_by=user["id"])
    except RoleAlreadyGranted:
        raise HTTPException(status_code=409, detail=f"User already holds an active {body.role} role")
    return {"ok": True, "user_id": body.user_id, "role": body.role}


@router.delete("/invoicers/{user_id}")
def revoke_roles(
    user_id: str,
    user=Depends(require_roles("auditor")),
    accounts: AccountDirectory = Depends(get_accounts),
):
    revoked = accounts.revoke_roles(user_id)
    if not revoked:
        raise HTTPException(status_code=404, detail="No active role for user")
    return {"ok": True, "user_id": user_id, "revoked": revoked}


@router.get("/audit")
def audit_entries(
    correlation_id: str | None = None,
    order_number: str | None = None,
    result: AuditResult | None = None,
    limit: int = Query(50, ge=1, le=200),
    user=Depends(require_roles("auditor")),
    audit: AuditLog = Depends(get_audit_log),
):
    return audit.search(
        correlation_id=correlation_id,
        order_number=order_number,
        result=result.value if result else None,
        limit=limit,
    )


@router.get("/stats")
def stats(
    user=Depends(require_roles("auditor")),
    ledger: OrderLedger = Depends(get_ledger),
    audit: AuditLog = Depends(get_audit_log),
):
    since = datetime.now(timezone.utc) - timedelta(hours=1)
    return {
        "orders": ledger.count_by_status(),
        "invoice_attempts_last_hour": audit.count_since(since),
    }
