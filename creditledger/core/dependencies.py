from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.accounts.store import SqlAccountStore
from creditledger.core.exceptions import ForbiddenError
from creditledger.core.security import Principal, decode_access_token
from creditledger.db.session import async_session_factory
from creditledger.ledger.engine import LedgerEngine
from creditledger.transactions.log import SqlTransactionLog

security_scheme = HTTPBearer()


async def get_db() -> AsyncSession:  # type: ignore[misc]
    async with async_session_factory() as session:
        yield session


def get_ledger() -> LedgerEngine:
    return LedgerEngine(
        SqlAccountStore(async_session_factory),
        SqlTransactionLog(async_session_factory),
    )


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security_scheme)],
) -> Principal:
    # The platform auth service has already verified the user; the token's
    # subject is trusted as the account id.
    principal = decode_access_token(credentials.credentials)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return principal


async def get_admin_principal(
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required")
    return principal


DbSession = Annotated[AsyncSession, Depends(get_db)]
Ledger = Annotated[LedgerEngine, Depends(get_ledger)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
AdminPrincipal = Annotated[Principal, Depends(get_admin_principal)]
