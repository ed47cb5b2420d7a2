from pydantic import BaseModel

from creditledger.ledger.engine import LedgerResult
from creditledger.ledger.reconciliation import AccountAudit
from creditledger.transactions.models import TransactionStatus
from creditledger.transactions.schemas import TransactionResponse


class LedgerResultResponse(BaseModel):
    status: TransactionStatus
    replayed: bool
    from_balance: int | None
    to_balance: int | None
    transaction: TransactionResponse

    @classmethod
    def from_result(cls, result: LedgerResult) -> "LedgerResultResponse":
        return cls(
            status=result.status,
            replayed=result.replayed,
            from_balance=result.from_balance,
            to_balance=result.to_balance,
            transaction=TransactionResponse.from_record(result.transaction),
        )


class FieldAuditResponse(BaseModel):
    opening: int
    balance: int
    completed_delta: int
    discrepancy: int


class AuditResponse(BaseModel):
    account_id: str
    balanced: bool
    credit: FieldAuditResponse
    wallet: FieldAuditResponse

    @classmethod
    def from_audit(cls, audit: AccountAudit) -> "AuditResponse":
        def _field(f) -> FieldAuditResponse:
            return FieldAuditResponse(
                opening=f.opening,
                balance=f.balance,
                completed_delta=f.completed_delta,
                discrepancy=f.discrepancy,
            )

        return cls(
            account_id=audit.account_id,
            balanced=audit.balanced,
            credit=_field(audit.credit),
            wallet=_field(audit.wallet),
        )
