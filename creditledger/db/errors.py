from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from creditledger.core.exceptions import StoreUnavailableError

# Failures of the storage round trip itself, as opposed to constraint violations.
_TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
    ConnectionError,
    TimeoutError,
)


@asynccontextmanager
async def store_errors(what: str) -> AsyncIterator[None]:
    """Translate transient database failures into StoreUnavailableError."""
    try:
        yield
    except _TRANSIENT_ERRORS as exc:
        raise StoreUnavailableError(f"{what} unavailable: {exc.__class__.__name__}") from exc
