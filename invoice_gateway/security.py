from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from invoice_gateway import config

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class Caller:
    id: str
    email: Optional[str]


class TokenError(Exception):
    """Token verification failed. `expired` distinguishes a stale session."""

    def __init__(self, message: str, expired: bool = False):
        super().__init__(message)
        self.expired = expired


def _pw_bytes_len(pw: str) -> int:
    return len(str(pw).encode("utf-8"))


def hash_password(password: str) -> str:
    if password is None:
        raise ValueError("Password required")

    password = str(password).strip()

    # bcrypt hard limit: 72 bytes
    if _pw_bytes_len(password) > 72:
        raise ValueError(f"Password too long: {_pw_bytes_len(password)} bytes (max 72)")

    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if password is None:
        return False

    password = str(password).strip()

    if _pw_bytes_len(password) > 72:
        return False

    return pwd_context.verify(password, password_hash)


def create_access_token(subject: str, email: str, expires_minutes: int | None = None) -> str:
    minutes = expires_minutes if expires_minutes is not None else config.ACCESS_TOKEN_EXPIRE_MINUTES
    now = datetime.now(timezone.utc)

    payload = {
        "sub": subject,
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    if config.TOKEN_AUDIENCE:
        payload["aud"] = config.TOKEN_AUDIENCE
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_token(token: str) -> dict:
    options = {} if config.TOKEN_AUDIENCE else {"verify_aud": False}
    try:
        return jwt.decode(
            token,
            config.SECRET_KEY,
            algorithms=[config.ALGORITHM],
            audience=config.TOKEN_AUDIENCE,
            options=options,
        )
    except ExpiredSignatureError as e:
        raise TokenError(str(e) or "Token expired", expired=True) from e
    except JWTError as e:
        msg = str(e) or "Invalid token"
        raise TokenError(msg, expired="expired" in msg.lower()) from e


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer ...` header, or None."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


class IdentityProvider:
    """Verifies bearer tokens and resolves them to a known user."""

    def __init__(self, accounts):
        self.accounts = accounts

    def verify(self, token: str) -> Caller:
        payload = decode_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise TokenError("Invalid token payload")

        user = self.accounts.get_user(user_id)
        if not user:
            raise TokenError("User not found")

        return Caller(id=user["id"], email=user["email"])
