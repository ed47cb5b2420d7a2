"""
Ledger engine — the only component allowed to move credits or wallet funds.

Rules:
- Every movement is recorded in the transaction log BEFORE any balance moves,
  and finalized (completed/failed) before the call returns.
- Balances change only through AccountStore.compare_and_swap; a lost race is
  retried with jittered backoff, never papered over.
- No in-process lock is held across an await; the stored version is the only
  serialization point, so several API instances can share one database.
- A transfer whose credit leg fails is compensated here, never by the caller.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from creditledger.accounts.schemas import AccountSnapshot
from creditledger.accounts.store import AccountStore, Mutation
from creditledger.config import settings
from creditledger.core.exceptions import (
    DuplicateIdempotencyKeyError,
    DuplicateInProgressError,
    InvalidAmountError,
    InvalidOperationError,
    LedgerError,
    StoreUnavailableError,
    VersionConflictError,
    VersionConflictExhaustedError,
)
from creditledger.db.base import utcnow
from creditledger.transactions.log import TransactionLog
from creditledger.transactions.models import BalanceField, TransactionKind, TransactionStatus
from creditledger.transactions.schemas import KIND_FIELD, TransactionRecord

logger = logging.getLogger(__name__)

CREDIT_KINDS = frozenset(
    {TransactionKind.CREDIT_PURCHASE, TransactionKind.CREDIT_REWARD, TransactionKind.WALLET_LOAD}
)
DEBIT_KINDS = frozenset({TransactionKind.CREDIT_SPEND, TransactionKind.WALLET_DEBIT})
TRANSFER_KINDS = frozenset({TransactionKind.CREDIT_TRANSFER})


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of one engine call. Balances are those of the moved field."""
    transaction: TransactionRecord
    from_balance: int | None = None
    to_balance: int | None = None
    replayed: bool = False

    @property
    def status(self) -> TransactionStatus:
        return self.transaction.status


def validate_amount(amount: Any) -> None:
    # bool is an int subclass; True is not one credit.
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)


def _validate_kind(kind: TransactionKind, allowed: frozenset, operation: str) -> None:
    if kind not in allowed:
        raise InvalidOperationError(f"{kind.value} is not a valid kind for {operation}")


def _mutation(field: BalanceField, delta: int) -> Mutation:
    if field == BalanceField.CREDIT:
        return lambda credit, wallet: (credit + delta, wallet)
    return lambda credit, wallet: (credit, wallet + delta)


def _balance(account: AccountSnapshot, field: BalanceField) -> int:
    if field == BalanceField.CREDIT:
        return account.credit_balance
    return account.wallet_balance


class LedgerEngine:
    def __init__(
        self,
        accounts: AccountStore,
        transactions: TransactionLog,
        *,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.accounts = accounts
        self.transactions = transactions
        self._max_attempts = max_attempts or settings.ledger_max_attempts
        self._backoff_base = (
            settings.ledger_backoff_base_seconds if backoff_base is None else backoff_base
        )
        self._backoff_cap = (
            settings.ledger_backoff_cap_seconds if backoff_cap is None else backoff_cap
        )
        self._sleep = sleep

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_balance(self, account_id: str) -> AccountSnapshot:
        return await self.accounts.get(account_id)

    # ── Movements ─────────────────────────────────────────────────────────────

    async def credit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        """Increase the credit (or wallet, for wallet kinds) balance of one account."""
        validate_amount(amount)
        _validate_kind(kind, CREDIT_KINDS, "credit")
        await self.accounts.get(account_id)

        tx = await self._begin(kind, amount, None, account_id, idempotency_key, metadata)
        if isinstance(tx, LedgerResult):
            return tx

        field = KIND_FIELD[kind]
        try:
            account = await self._apply(account_id, field, amount)
        except LedgerError as exc:
            await self._fail(tx, exc.code, exc.message)
            raise
        return await self._complete(tx, to_balance=_balance(account, field))

    async def debit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        """Decrease a balance; InsufficientFundsError if it would go negative."""
        validate_amount(amount)
        _validate_kind(kind, DEBIT_KINDS, "debit")
        await self.accounts.get(account_id)

        tx = await self._begin(kind, amount, account_id, None, idempotency_key, metadata)
        if isinstance(tx, LedgerResult):
            return tx

        field = KIND_FIELD[kind]
        try:
            account = await self._apply(account_id, field, -amount)
        except LedgerError as exc:
            await self._fail(tx, exc.code, exc.message)
            raise
        return await self._complete(tx, from_balance=_balance(account, field))

    async def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: int,
        kind: TransactionKind,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        """
        Move `amount` from one account to another, or nothing at all.

        The sender is debited first. If the recipient's credit cannot be
        applied, the sender is credited back (a reversal recorded in the
        transaction metadata) before the error is raised.
        """
        validate_amount(amount)
        _validate_kind(kind, TRANSFER_KINDS, "transfer")
        if from_account_id == to_account_id:
            raise InvalidOperationError("Cannot transfer to the same account")
        await self.accounts.get(from_account_id)
        await self.accounts.get(to_account_id)

        tx = await self._begin(kind, amount, from_account_id, to_account_id, idempotency_key, metadata)
        if isinstance(tx, LedgerResult):
            return tx

        field = KIND_FIELD[kind]
        try:
            sender = await self._apply(from_account_id, field, -amount)
        except LedgerError as exc:
            await self._fail(tx, exc.code, exc.message)
            raise

        try:
            recipient = await self._apply(to_account_id, field, amount)
        except LedgerError as exc:
            await self._reverse(tx, exc.code, exc.message)
            raise

        return await self._complete(
            tx,
            from_balance=_balance(sender, field),
            to_balance=_balance(recipient, field),
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _begin(
        self,
        kind: TransactionKind,
        amount: int,
        from_account_id: str | None,
        to_account_id: str | None,
        idempotency_key: str | None,
        metadata: dict[str, Any] | None,
    ) -> TransactionRecord | LedgerResult:
        """Append the pending transaction, or short-circuit a duplicate request."""
        if idempotency_key is not None:
            existing = await self.transactions.find_by_idempotency_key(idempotency_key, kind)
            if existing is not None and existing.status != TransactionStatus.FAILED:
                return self._resolve_duplicate(existing, amount, from_account_id, to_account_id)

        try:
            return await self.transactions.append(
                kind,
                amount,
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
        except DuplicateIdempotencyKeyError as exc:
            return self._resolve_duplicate(exc.existing, amount, from_account_id, to_account_id)

    def _resolve_duplicate(
        self,
        existing: TransactionRecord,
        amount: int,
        from_account_id: str | None,
        to_account_id: str | None,
    ) -> LedgerResult:
        if (existing.amount, existing.from_account_id, existing.to_account_id) != (
            amount,
            from_account_id,
            to_account_id,
        ):
            raise InvalidOperationError(
                f"Idempotency key {existing.idempotency_key!r} was already used for a different operation"
            )
        if existing.status == TransactionStatus.PENDING:
            raise DuplicateInProgressError(existing.idempotency_key or "")

        logger.info("Replayed %s transaction %s", existing.kind.value, existing.id)
        return LedgerResult(
            transaction=existing,
            from_balance=existing.from_balance_after,
            to_balance=existing.to_balance_after,
            replayed=True,
        )

    async def _apply(self, account_id: str, field: BalanceField, delta: int) -> AccountSnapshot:
        """Read-compute-swap one account, retrying lost races with jittered backoff."""
        mutate = _mutation(field, delta)
        for attempt in range(1, self._max_attempts + 1):
            current = await self.accounts.get(account_id)
            try:
                return await self.accounts.compare_and_swap(account_id, current.version, mutate)
            except VersionConflictError:
                if attempt == self._max_attempts:
                    break
                await self._sleep(self._backoff(attempt))

        logger.warning(
            "Gave up on account %s after %d version conflicts", account_id, self._max_attempts
        )
        raise VersionConflictExhaustedError(account_id, self._max_attempts)

    def _backoff(self, attempt: int) -> float:
        # Full jitter: uniform over [0, min(cap, base * 2^(attempt-1))]
        ceiling = min(self._backoff_cap, self._backoff_base * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)

    async def _complete(
        self,
        tx: TransactionRecord,
        from_balance: int | None = None,
        to_balance: int | None = None,
    ) -> LedgerResult:
        completed = await self.transactions.finalize(
            tx.id,
            TransactionStatus.COMPLETED,
            from_balance_after=from_balance,
            to_balance_after=to_balance,
        )
        logger.info(
            "Completed %s transaction %s amount=%d from=%s to=%s",
            tx.kind.value, tx.id, tx.amount, tx.from_account_id, tx.to_account_id,
        )
        return LedgerResult(transaction=completed, from_balance=from_balance, to_balance=to_balance)

    async def _fail(
        self,
        tx: TransactionRecord,
        reason: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.warning("Transaction %s (%s) failed: %s", tx.id, tx.kind.value, message)
        try:
            await self.transactions.finalize(
                tx.id,
                TransactionStatus.FAILED,
                failure_reason=reason,
                metadata=metadata,
            )
        except StoreUnavailableError:
            # Still pending; the reconciliation sweep finalizes it.
            logger.error("Could not record failure of transaction %s; left pending", tx.id)

    async def _reverse(self, tx: TransactionRecord, reason: str, message: str) -> bool:
        """Credit the sender back after the recipient leg of a transfer failed."""
        sender = str(tx.from_account_id)
        try:
            await self._apply(sender, tx.balance_field, tx.amount)
        except LedgerError as reversal_exc:
            logger.error(
                "Reversal of transaction %s failed (%s); sender %s stays debited until reconciliation",
                tx.id, reversal_exc.message, sender,
            )
            return False

        await self._fail(
            tx,
            reason,
            message,
            metadata={
                "reversal": {
                    "status": TransactionStatus.COMPLETED.value,
                    "account_id": sender,
                    "amount": tx.amount,
                    "reason": reason,
                    "reversed_at": utcnow().isoformat(),
                }
            },
        )
        return True

    async def reverse_stranded_transfer(self, tx: TransactionRecord, reason: str = "abandoned") -> bool:
        """
        Compensate a pending transfer whose debit landed but whose credit never
        did (the request died between the two legs). Used by reconciliation.
        """
        if tx.kind not in TRANSFER_KINDS or tx.status != TransactionStatus.PENDING:
            raise InvalidOperationError(f"Transaction {tx.id} is not a pending transfer")
        return await self._reverse(tx, reason, "recipient leg never applied")
