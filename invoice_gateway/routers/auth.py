from fastapi import APIRouter, Depends, HTTPException

from invoice_gateway.accounts import AccountDirectory
from invoice_gateway.deps import get_accounts, get_current_user
from invoice_gateway.schemas import LoginReq, TokenOut
from invoice_gateway.security import create_access_token, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenOut)
def login(body: LoginReq, accounts: AccountDirectory = Depends(get_accounts)):
    user = accounts.get_user_by_email(body.email)

    if not user or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    token = create_access_token(subject=user["id"], email=user["email"])
    return {"access_token": token, "token_type": "bearer"}


@router.get("/me")
def me(user=Depends(get_current_user)):
    return user
