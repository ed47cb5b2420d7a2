"""
Account Store — durable, optimistically locked account balances.

Rules:
- Every balance change goes through compare_and_swap(); there is no plain setter.
- A swap only lands if the stored version still equals the caller's expected
  version; the loser gets VersionConflictError and must re-read.
- A swap that would drive either balance below zero is rejected with
  InsufficientFundsError before anything is persisted.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Callable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger.accounts.models import Account
from creditledger.accounts.schemas import AccountSnapshot
from creditledger.core.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidOperationError,
    VersionConflictError,
)
from creditledger.db.base import utcnow
from creditledger.db.errors import store_errors

# (credit_balance, wallet_balance) -> (credit_balance, wallet_balance)
Mutation = Callable[[int, int], tuple[int, int]]


def _check_non_negative(current: AccountSnapshot, credit: int, wallet: int) -> None:
    if credit < 0:
        raise InsufficientFundsError(
            current.account_id,
            balance=current.credit_balance,
            required=current.credit_balance - credit,
        )
    if wallet < 0:
        raise InsufficientFundsError(
            current.account_id,
            balance=current.wallet_balance,
            required=current.wallet_balance - wallet,
        )


def _check_opening(credit_balance: int, wallet_balance: int) -> None:
    for value in (credit_balance, wallet_balance):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidAmountError(value)


class AccountStore(ABC):
    """Storage contract shared by the SQL and in-memory backends."""

    @abstractmethod
    async def get(self, account_id: str) -> AccountSnapshot:
        """Return the current snapshot or raise AccountNotFoundError."""
        ...

    @abstractmethod
    async def compare_and_swap(
        self, account_id: str, expected_version: int, mutate: Mutation
    ) -> AccountSnapshot:
        """Apply `mutate` iff the stored version equals `expected_version`."""
        ...

    @abstractmethod
    async def create(
        self, account_id: str, credit_balance: int = 0, wallet_balance: int = 0
    ) -> AccountSnapshot:
        ...


class SqlAccountStore(AccountStore):
    """Each call runs in its own short database transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, account_id: str) -> AccountSnapshot:
        async with store_errors("Account store"):
            async with self._session_factory() as db:
                account = await db.get(Account, account_id)
                if account is None:
                    raise AccountNotFoundError(account_id)
                return AccountSnapshot.model_validate(account)

    async def compare_and_swap(
        self, account_id: str, expected_version: int, mutate: Mutation
    ) -> AccountSnapshot:
        async with store_errors("Account store"):
            async with self._session_factory() as db:
                async with db.begin():
                    account = await db.get(Account, account_id)
                    if account is None:
                        raise AccountNotFoundError(account_id)
                    current = AccountSnapshot.model_validate(account)
                    if current.version != expected_version:
                        raise VersionConflictError(account_id, expected_version, current.version)

                    credit, wallet = mutate(current.credit_balance, current.wallet_balance)
                    _check_non_negative(current, credit, wallet)

                    now = utcnow()
                    # The version predicate is the compare half of the swap: a
                    # concurrent writer that committed first leaves rowcount == 0.
                    result = await db.execute(
                        update(Account)
                        .where(
                            Account.account_id == account_id,
                            Account.version == expected_version,
                        )
                        .values(
                            credit_balance=credit,
                            wallet_balance=wallet,
                            version=Account.version + 1,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise VersionConflictError(account_id, expected_version, expected_version + 1)

        return current.model_copy(
            update={
                "credit_balance": credit,
                "wallet_balance": wallet,
                "version": expected_version + 1,
                "updated_at": now,
            }
        )

    async def create(
        self, account_id: str, credit_balance: int = 0, wallet_balance: int = 0
    ) -> AccountSnapshot:
        _check_opening(credit_balance, wallet_balance)
        account = Account(
            account_id=account_id,
            credit_balance=credit_balance,
            wallet_balance=wallet_balance,
            opening_credit_balance=credit_balance,
            opening_wallet_balance=wallet_balance,
            version=0,
        )
        async with store_errors("Account store"):
            async with self._session_factory() as db:
                try:
                    async with db.begin():
                        db.add(account)
                except IntegrityError as exc:
                    raise InvalidOperationError(f"Account already exists: {account_id}") from exc
                return AccountSnapshot.model_validate(account)


class InMemoryAccountStore(AccountStore):
    """
    Dict-backed store for tests and single-process development.

    The check-and-set inside compare_and_swap contains no await, so on one
    event loop it is atomic per key; the leading sleep(0) stands in for the
    storage round trip and lets concurrent callers interleave realistically.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, AccountSnapshot] = {}

    async def get(self, account_id: str) -> AccountSnapshot:
        await asyncio.sleep(0)
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def compare_and_swap(
        self, account_id: str, expected_version: int, mutate: Mutation
    ) -> AccountSnapshot:
        await asyncio.sleep(0)
        current = self._accounts.get(account_id)
        if current is None:
            raise AccountNotFoundError(account_id)
        if current.version != expected_version:
            raise VersionConflictError(account_id, expected_version, current.version)

        credit, wallet = mutate(current.credit_balance, current.wallet_balance)
        _check_non_negative(current, credit, wallet)

        updated = current.model_copy(
            update={
                "credit_balance": credit,
                "wallet_balance": wallet,
                "version": current.version + 1,
                "updated_at": utcnow(),
            }
        )
        self._accounts[account_id] = updated
        return updated

    async def create(
        self, account_id: str, credit_balance: int = 0, wallet_balance: int = 0
    ) -> AccountSnapshot:
        _check_opening(credit_balance, wallet_balance)
        if account_id in self._accounts:
            raise InvalidOperationError(f"Account already exists: {account_id}")
        now = utcnow()
        account = AccountSnapshot(
            account_id=account_id,
            credit_balance=credit_balance,
            wallet_balance=wallet_balance,
            opening_credit_balance=credit_balance,
            opening_wallet_balance=wallet_balance,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self._accounts[account_id] = account
        return account
