import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Index, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from creditledger.db.base import Base, TimestampMixin, UUIDMixin


class TransactionKind(str, enum.Enum):
    CREDIT_PURCHASE = "credit_purchase"
    CREDIT_REWARD = "credit_reward"
    CREDIT_SPEND = "credit_spend"
    CREDIT_TRANSFER = "credit_transfer"
    WALLET_LOAD = "wallet_load"
    WALLET_DEBIT = "wallet_debit"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BalanceField(str, enum.Enum):
    CREDIT = "credit"
    WALLET = "wallet"


class LedgerTransaction(UUIDMixin, TimestampMixin, Base):
    """One attempted credit/wallet movement. Append-only; immutable once terminal."""
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        Index("ix_ledger_tx_key_kind", "idempotency_key", "kind"),
        Index("ix_ledger_tx_status_created", "status", "created_at"),
    )

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # "{kind}:{key}" while the transaction is pending or completed, NULL once failed.
    # The unique constraint lets exactly one live transaction own a key.
    idempotency_slot: Mapped[str | None] = mapped_column(
        String(300), unique=True, nullable=True
    )
    kind: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    from_account_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("accounts.account_id"), nullable=True, index=True
    )
    to_account_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("accounts.account_id"), nullable=True, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    from_balance_after: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    to_balance_after: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
