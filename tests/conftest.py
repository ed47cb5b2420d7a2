"""
Test fixtures using async SQLite for fast, isolated tests.
No PostgreSQL required for unit tests.

Every SQL fixture shares one in-memory connection (StaticPool), so SQL-backed
tests run their operations sequentially; concurrency tests use the in-memory
backends.
"""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from creditledger.accounts.store import InMemoryAccountStore, SqlAccountStore
from creditledger.core.exceptions import StoreUnavailableError, VersionConflictError
from creditledger.db.base import Base
from creditledger.ledger.engine import LedgerEngine
from creditledger.transactions.log import InMemoryTransactionLog, SqlTransactionLog
# Models must be imported so Base.metadata knows all tables
from creditledger.accounts.models import Account  # noqa: F401
from creditledger.settlement.models import Collaboration, CreditBundle, MarketplaceOffer, Territory  # noqa: F401
from creditledger.transactions.models import LedgerTransaction  # noqa: F401


def build_ledger(accounts, transactions, max_attempts: int = 5) -> LedgerEngine:
    # Zero backoff: retries still yield to the loop via sleep(0).
    return LedgerEngine(
        accounts,
        transactions,
        max_attempts=max_attempts,
        backoff_base=0,
        backoff_cap=0,
    )


class FlakyAccountStore(InMemoryAccountStore):
    """
    In-memory store whose compare_and_swap can be scripted per account.

    `script[account_id]` is consumed one entry per swap attempt: "conflict"
    loses the race, "unavailable" fails the round trip, None proceeds.
    Once the list is exhausted swaps proceed normally.
    """

    def __init__(self) -> None:
        super().__init__()
        self.script: dict[str, list[str | None]] = {}
        self.swaps: list[str] = []

    async def compare_and_swap(self, account_id, expected_version, mutate):
        self.swaps.append(account_id)
        queue = self.script.get(account_id)
        step = queue.pop(0) if queue else None
        if step == "conflict":
            raise VersionConflictError(account_id, expected_version, expected_version + 1)
        if step == "unavailable":
            raise StoreUnavailableError("Account store unavailable: scripted")
        return await super().compare_and_swap(account_id, expected_version, mutate)


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database for each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def memory_ledger() -> LedgerEngine:
    return build_ledger(InMemoryAccountStore(), InMemoryTransactionLog())


@pytest.fixture
def sql_ledger(session_factory) -> LedgerEngine:
    return build_ledger(SqlAccountStore(session_factory), SqlTransactionLog(session_factory))


@pytest.fixture(params=["memory", "sql"])
def ledger(request, session_factory) -> LedgerEngine:
    """Runs the test once per storage backend."""
    if request.param == "memory":
        return build_ledger(InMemoryAccountStore(), InMemoryTransactionLog())
    return build_ledger(SqlAccountStore(session_factory), SqlTransactionLog(session_factory))


@pytest.fixture
def flaky_store() -> FlakyAccountStore:
    return FlakyAccountStore()


@pytest.fixture
def flaky_ledger(flaky_store) -> LedgerEngine:
    return build_ledger(flaky_store, InMemoryTransactionLog())
