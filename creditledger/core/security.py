from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from creditledger.config import settings


@dataclass(frozen=True)
class Principal:
    """Identity resolved from a bearer token issued by the platform auth service."""
    account_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(account_id: str, role: str = "user", expires_minutes: int = 60) -> str:
    """Issue a token for local development and tests; production tokens come from auth."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": account_id, "role": role, "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Principal | None:
    """Returns the principal or None if invalid."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return Principal(account_id=str(subject), role=payload.get("role") or "user")
