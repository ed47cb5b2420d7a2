import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from creditledger.transactions.models import BalanceField, TransactionKind, TransactionStatus

# Which balance each kind moves. Wallet kinds never touch credits and vice versa.
KIND_FIELD: dict[TransactionKind, BalanceField] = {
    TransactionKind.CREDIT_PURCHASE: BalanceField.CREDIT,
    TransactionKind.CREDIT_REWARD: BalanceField.CREDIT,
    TransactionKind.CREDIT_SPEND: BalanceField.CREDIT,
    TransactionKind.CREDIT_TRANSFER: BalanceField.CREDIT,
    TransactionKind.WALLET_LOAD: BalanceField.WALLET,
    TransactionKind.WALLET_DEBIT: BalanceField.WALLET,
}


class TransactionRecord(BaseModel):
    model_config = {"from_attributes": True, "frozen": True, "populate_by_name": True}

    id: uuid.UUID
    idempotency_key: str | None = None
    kind: TransactionKind
    from_account_id: str | None = None
    to_account_id: str | None = None
    amount: int
    status: TransactionStatus
    created_at: datetime
    completed_at: datetime | None = None
    from_balance_after: int | None = None
    to_balance_after: int | None = None
    failure_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING

    @property
    def balance_field(self) -> BalanceField:
        return KIND_FIELD[self.kind]

    def signed_delta(self, account_id: str) -> int:
        """Effect of this transaction on `account_id`'s balance (ignores status)."""
        delta = 0
        if self.from_account_id == account_id:
            delta -= self.amount
        if self.to_account_id == account_id:
            delta += self.amount
        return delta


class TransactionResponse(BaseModel):
    id: uuid.UUID
    kind: TransactionKind
    status: TransactionStatus
    amount: int
    from_account_id: str | None
    to_account_id: str | None
    idempotency_key: str | None
    failure_reason: str | None
    metadata: dict[str, Any]
    created_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_record(cls, record: TransactionRecord) -> "TransactionResponse":
        return cls.model_validate(record.model_dump(exclude={"from_balance_after", "to_balance_after"}))
