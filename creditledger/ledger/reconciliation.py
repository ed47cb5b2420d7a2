"""
Reconciliation — conservation audit and the stale-pending sweep.

A request cancelled between "transaction appended" and "transaction
finalized" leaves a pending record behind. The sweep decides what actually
happened by comparing each account's audit discrepancy
(balance - opening - completed deltas) with the deltas the pending
transaction would have produced.
"""
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from creditledger.ledger.engine import TRANSFER_KINDS, LedgerEngine
from creditledger.transactions.models import BalanceField, TransactionStatus
from creditledger.transactions.schemas import TransactionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldAudit:
    opening: int
    balance: int
    completed_delta: int

    @property
    def discrepancy(self) -> int:
        return self.balance - self.opening - self.completed_delta


@dataclass(frozen=True)
class AccountAudit:
    account_id: str
    credit: FieldAudit
    wallet: FieldAudit

    @property
    def balanced(self) -> bool:
        return self.credit.discrepancy == 0 and self.wallet.discrepancy == 0

    def for_field(self, balance_field: BalanceField) -> FieldAudit:
        return self.credit if balance_field == BalanceField.CREDIT else self.wallet


async def audit_account(engine: LedgerEngine, account_id: str) -> AccountAudit:
    """Check balance == opening + sum(completed deltas) for both balance fields.

    Movements in flight show up as a transient discrepancy; audit quiescent
    accounts or re-run before acting on a mismatch.
    """
    account = await engine.accounts.get(account_id)
    completed = await engine.transactions.list_completed_for_account(account_id)

    deltas = {BalanceField.CREDIT: 0, BalanceField.WALLET: 0}
    for tx in completed:
        deltas[tx.balance_field] += tx.signed_delta(account_id)

    return AccountAudit(
        account_id=account_id,
        credit=FieldAudit(
            opening=account.opening_credit_balance,
            balance=account.credit_balance,
            completed_delta=deltas[BalanceField.CREDIT],
        ),
        wallet=FieldAudit(
            opening=account.opening_wallet_balance,
            balance=account.wallet_balance,
            completed_delta=deltas[BalanceField.WALLET],
        ),
    )


class SweepOutcome(str, enum.Enum):
    COMPLETED = "completed"   # every leg had landed
    ABANDONED = "abandoned"   # no leg had landed
    REVERSED = "reversed"     # transfer debit landed, credit did not; sender restored
    SKIPPED = "skipped"       # ambiguous; left pending for manual review


@dataclass
class SweepResult:
    transaction_id: uuid.UUID
    outcome: SweepOutcome
    detail: str = ""


@dataclass
class SweepReport:
    results: list[SweepResult] = field(default_factory=list)

    def count(self, outcome: SweepOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)


def _accounts_of(tx: TransactionRecord) -> list[str]:
    return [a for a in (tx.from_account_id, tx.to_account_id) if a is not None]


async def resolve_pending(engine: LedgerEngine, tx: TransactionRecord) -> SweepResult:
    if tx.status != TransactionStatus.PENDING:
        return SweepResult(tx.id, SweepOutcome.SKIPPED, "already terminal")

    accounts = _accounts_of(tx)
    for account_id in accounts:
        pending = await engine.transactions.list_pending_for_account(account_id)
        if any(other.id != tx.id for other in pending):
            return SweepResult(tx.id, SweepOutcome.SKIPPED, f"other pending transactions on {account_id}")

    landed: dict[str, bool] = {}
    untouched: dict[str, bool] = {}
    balances: dict[str, int] = {}
    for account_id in accounts:
        audit = (await audit_account(engine, account_id)).for_field(tx.balance_field)
        landed[account_id] = audit.discrepancy == tx.signed_delta(account_id)
        untouched[account_id] = audit.discrepancy == 0
        balances[account_id] = audit.balance

    if all(landed.values()):
        await engine.transactions.finalize(
            tx.id,
            TransactionStatus.COMPLETED,
            from_balance_after=balances.get(tx.from_account_id or ""),
            to_balance_after=balances.get(tx.to_account_id or ""),
            metadata={"reconciled": True},
        )
        return SweepResult(tx.id, SweepOutcome.COMPLETED)

    if all(untouched.values()):
        await engine.transactions.finalize(
            tx.id,
            TransactionStatus.FAILED,
            failure_reason=SweepOutcome.ABANDONED.value,
            metadata={"reconciled": True},
        )
        return SweepResult(tx.id, SweepOutcome.ABANDONED)

    if (
        tx.kind in TRANSFER_KINDS
        and landed[str(tx.from_account_id)]
        and untouched[str(tx.to_account_id)]
    ):
        if await engine.reverse_stranded_transfer(tx):
            return SweepResult(tx.id, SweepOutcome.REVERSED)
        return SweepResult(tx.id, SweepOutcome.SKIPPED, "reversal could not be applied")

    return SweepResult(tx.id, SweepOutcome.SKIPPED, "balances do not match any outcome")


async def sweep_stale_pending(engine: LedgerEngine, older_than: timedelta) -> SweepReport:
    report = SweepReport()
    for tx in await engine.transactions.list_stale_pending(older_than):
        result = await resolve_pending(engine, tx)
        if result.outcome == SweepOutcome.SKIPPED:
            logger.warning("Left transaction %s pending: %s", tx.id, result.detail)
        else:
            logger.info("Resolved stale transaction %s as %s", tx.id, result.outcome.value)
        report.results.append(result)
    return report
