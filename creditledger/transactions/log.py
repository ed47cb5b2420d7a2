"""
Transaction Log — append-only audit trail of every credit/wallet movement.

Rules:
- NEVER delete transactions; a terminal transaction is never modified again.
- append() creates the record as `pending`; finalize() moves it exactly once
  to `completed` or `failed`. Finalizing a terminal record is a no-op.
- At most one live (pending or completed) transaction may hold a given
  (idempotency_key, kind). A failed attempt releases the key so the caller
  can retry the operation.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger.core.exceptions import (
    DuplicateIdempotencyKeyError,
    DuplicateInProgressError,
    NotFoundError,
)
from creditledger.db.base import utcnow
from creditledger.db.errors import store_errors
from creditledger.transactions.models import LedgerTransaction, TransactionKind, TransactionStatus
from creditledger.transactions.schemas import TransactionRecord

TERMINAL_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


def idempotency_slot(key: str | None, kind: TransactionKind) -> str | None:
    if key is None:
        return None
    return f"{kind.value}:{key}"


class TransactionLog(ABC):
    @abstractmethod
    async def append(
        self,
        kind: TransactionKind,
        amount: int,
        *,
        from_account_id: str | None = None,
        to_account_id: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionRecord:
        """Record a new pending transaction.

        Raises DuplicateIdempotencyKeyError if a live transaction already
        holds the same (idempotency_key, kind).
        """
        ...

    @abstractmethod
    async def finalize(
        self,
        transaction_id: uuid.UUID,
        status: TransactionStatus,
        *,
        from_balance_after: int | None = None,
        to_balance_after: int | None = None,
        failure_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionRecord:
        ...

    @abstractmethod
    async def get(self, transaction_id: uuid.UUID) -> TransactionRecord:
        ...

    @abstractmethod
    async def find_by_idempotency_key(
        self, key: str, kind: TransactionKind
    ) -> TransactionRecord | None:
        """Live holder of the key if any, otherwise the most recent failed attempt."""
        ...

    @abstractmethod
    async def list_for_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[TransactionRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_completed_for_account(self, account_id: str) -> list[TransactionRecord]:
        ...

    @abstractmethod
    async def list_pending_for_account(self, account_id: str) -> list[TransactionRecord]:
        ...

    @abstractmethod
    async def list_stale_pending(self, older_than: timedelta) -> list[TransactionRecord]:
        """Pending transactions created more than `older_than` ago, oldest first."""
        ...


def _check_terminal(status: TransactionStatus) -> None:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Cannot finalize a transaction as {status.value}")


class SqlTransactionLog(TransactionLog):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        kind: TransactionKind,
        amount: int,
        *,
        from_account_id: str | None = None,
        to_account_id: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionRecord:
        tx = LedgerTransaction(
            id=uuid.uuid4(),
            idempotency_key=idempotency_key,
            idempotency_slot=idempotency_slot(idempotency_key, kind),
            kind=kind,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            status=TransactionStatus.PENDING,
            created_at=utcnow(),
            metadata_=dict(metadata or {}),
        )
        async with store_errors("Transaction log"):
            async with self._session_factory() as db:
                try:
                    async with db.begin():
                        db.add(tx)
                except IntegrityError:
                    if idempotency_key is None:
                        raise
                    existing = await self.find_by_idempotency_key(idempotency_key, kind)
                    if existing is None or existing.status == TransactionStatus.FAILED:
                        # The holder failed between our insert and the lookup.
                        raise DuplicateInProgressError(idempotency_key)
                    raise DuplicateIdempotencyKeyError(existing)
                return TransactionRecord.model_validate(tx)

    async def finalize(
        self,
        transaction_id: uuid.UUID,
        status: TransactionStatus,
        *,
        from_balance_after: int | None = None,
        to_balance_after: int | None = None,
        failure_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionRecord:
        _check_terminal(status)
        async with store_errors("Transaction log"):
            async with self._session_factory() as db:
                async with db.begin():
                    tx = await db.get(LedgerTransaction, transaction_id)
                    if tx is None:
                        raise NotFoundError("Transaction", str(transaction_id))
                    current = TransactionRecord.model_validate(tx)
                    if current.is_terminal:
                        return current

                    changes: dict[str, Any] = {
                        "status": status,
                        "completed_at": utcnow(),
                        "from_balance_after": from_balance_after,
                        "to_balance_after": to_balance_after,
                        "failure_reason": failure_reason,
                        "metadata": {**current.metadata, **(metadata or {})},
                    }
                    values: dict[Any, Any] = {
                        LedgerTransaction.status: status,
                        LedgerTransaction.completed_at: changes["completed_at"],
                        LedgerTransaction.from_balance_after: from_balance_after,
                        LedgerTransaction.to_balance_after: to_balance_after,
                        LedgerTransaction.failure_reason: failure_reason,
                        LedgerTransaction.metadata_: changes["metadata"],
                    }
                    if status == TransactionStatus.FAILED:
                        values[LedgerTransaction.idempotency_slot] = None

                    # Guarded on status so two finalizers cannot both win.
                    result = await db.execute(
                        update(LedgerTransaction)
                        .where(
                            LedgerTransaction.id == transaction_id,
                            LedgerTransaction.status == TransactionStatus.PENDING,
                        )
                        .values(values)
                        .execution_options(synchronize_session=False)
                    )
                    won = result.rowcount == 1

            if won:
                return current.model_copy(update=changes)
            return await self.get(transaction_id)

    async def get(self, transaction_id: uuid.UUID) -> TransactionRecord:
        async with store_errors("Transaction log"):
            async with self._session_factory() as db:
                tx = await db.get(LedgerTransaction, transaction_id)
                if tx is None:
                    raise NotFoundError("Transaction", str(transaction_id))
                return TransactionRecord.model_validate(tx)

    async def find_by_idempotency_key(
        self, key: str, kind: TransactionKind
    ) -> TransactionRecord | None:
        async with store_errors("Transaction log"):
            async with self._session_factory() as db:
                result = await db.execute(
                    select(LedgerTransaction).where(
                        LedgerTransaction.idempotency_slot == idempotency_slot(key, kind)
                    )
                )
                live = result.scalar_one_or_none()
                if live is not None:
                    return TransactionRecord.model_validate(live)

                result = await db.execute(
                    select(LedgerTransaction)
                    .where(
                        LedgerTransaction.idempotency_key == key,
                        LedgerTransaction.kind == kind,
                    )
                    .order_by(LedgerTransaction.created_at.desc())
                    .limit(1)
                )
                latest = result.scalar_one_or_none()
                return TransactionRecord.model_validate(latest) if latest is not None else None

    async def list_for_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[TransactionRecord]:
        return await self._select(
            select(LedgerTransaction)
            .where(_touches(account_id))
            .order_by(LedgerTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )

    async def list_completed_for_account(self, account_id: str) -> list[TransactionRecord]:
        return await self._select(
            select(LedgerTransaction).where(
                _touches(account_id),
                LedgerTransaction.status == TransactionStatus.COMPLETED,
            )
        )

    async def list_pending_for_account(self, account_id: str) -> list[TransactionRecord]:
        return await self._select(
            select(LedgerTransaction)
            .where(
                _touches(account_id),
                LedgerTransaction.status == TransactionStatus.PENDING,
            )
            .order_by(LedgerTransaction.created_at)
        )

    async def list_stale_pending(self, older_than: timedelta) -> list[TransactionRecord]:
        cutoff: datetime = utcnow() - older_than
        return await self._select(
            select(LedgerTransaction)
            .where(
                LedgerTransaction.status == TransactionStatus.PENDING,
                LedgerTransaction.created_at <= cutoff,
            )
            .order_by(LedgerTransaction.created_at)
        )

    async def _select(self, query) -> list[TransactionRecord]:
        async with store_errors("Transaction log"):
            async with self._session_factory() as db:
                result = await db.execute(query)
                return [TransactionRecord.model_validate(tx) for tx in result.scalars().all()]


def _touches(account_id: str):
    return or_(
        LedgerTransaction.from_account_id == account_id,
        LedgerTransaction.to_account_id == account_id,
    )


class InMemoryTransactionLog(TransactionLog):
    """Dict-backed log; slot claims are atomic because they contain no await."""

    def __init__(self) -> None:
        self._transactions: dict[uuid.UUID, TransactionRecord] = {}
        self._slots: dict[str, uuid.UUID] = {}

    async def append(
        self,
        kind: TransactionKind,
        amount: int,
        *,
        from_account_id: str | None = None,
        to_account_id: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionRecord:
        await asyncio.sleep(0)
        slot = idempotency_slot(idempotency_key, kind)
        if slot is not None and slot in self._slots:
            raise DuplicateIdempotencyKeyError(self._transactions[self._slots[slot]])

        record = TransactionRecord(
            id=uuid.uuid4(),
            idempotency_key=idempotency_key,
            kind=kind,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            status=TransactionStatus.PENDING,
            created_at=utcnow(),
            metadata=dict(metadata or {}),
        )
        self._transactions[record.id] = record
        if slot is not None:
            self._slots[slot] = record.id
        return record

    async def finalize(
        self,
        transaction_id: uuid.UUID,
        status: TransactionStatus,
        *,
        from_balance_after: int | None = None,
        to_balance_after: int | None = None,
        failure_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransactionRecord:
        _check_terminal(status)
        await asyncio.sleep(0)
        record = self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction", str(transaction_id))
        if record.is_terminal:
            return record

        updated = record.model_copy(
            update={
                "status": status,
                "completed_at": utcnow(),
                "from_balance_after": from_balance_after,
                "to_balance_after": to_balance_after,
                "failure_reason": failure_reason,
                "metadata": {**record.metadata, **(metadata or {})},
            }
        )
        self._transactions[transaction_id] = updated
        if status == TransactionStatus.FAILED:
            slot = idempotency_slot(record.idempotency_key, record.kind)
            if slot is not None and self._slots.get(slot) == transaction_id:
                del self._slots[slot]
        return updated

    async def get(self, transaction_id: uuid.UUID) -> TransactionRecord:
        record = self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction", str(transaction_id))
        return record

    async def find_by_idempotency_key(
        self, key: str, kind: TransactionKind
    ) -> TransactionRecord | None:
        await asyncio.sleep(0)
        slot = idempotency_slot(key, kind)
        if slot in self._slots:
            return self._transactions[self._slots[slot]]
        attempts = [
            tx for tx in self._transactions.values()
            if tx.idempotency_key == key and tx.kind == kind
        ]
        return attempts[-1] if attempts else None

    async def list_for_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[TransactionRecord]:
        touching = [tx for tx in self._transactions.values() if _names(tx, account_id)]
        touching.reverse()
        return touching[offset:offset + limit]

    async def list_completed_for_account(self, account_id: str) -> list[TransactionRecord]:
        return [
            tx for tx in self._transactions.values()
            if _names(tx, account_id) and tx.status == TransactionStatus.COMPLETED
        ]

    async def list_pending_for_account(self, account_id: str) -> list[TransactionRecord]:
        return [
            tx for tx in self._transactions.values()
            if _names(tx, account_id) and tx.status == TransactionStatus.PENDING
        ]

    async def list_stale_pending(self, older_than: timedelta) -> list[TransactionRecord]:
        cutoff = utcnow() - older_than
        return [
            tx for tx in self._transactions.values()
            if tx.status == TransactionStatus.PENDING and tx.created_at <= cutoff
        ]


def _names(tx: TransactionRecord, account_id: str) -> bool:
    return account_id in (tx.from_account_id, tx.to_account_id)
