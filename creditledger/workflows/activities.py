"""
Temporal activities for the ledger reconciliation workflow.

Each activity is a discrete, retryable unit of work. Transaction ids cross
the workflow boundary as strings.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from temporalio import activity

from creditledger.core.dependencies import get_ledger
from creditledger.ledger.reconciliation import resolve_pending

logger = logging.getLogger(__name__)


@dataclass
class FindStalePendingInput:
    older_than_seconds: int


@dataclass
class ResolvePendingOutput:
    transaction_id: str
    outcome: str
    detail: str = ""


@activity.defn
async def find_stale_pending(input: FindStalePendingInput) -> list[str]:
    ledger = get_ledger()
    stale = await ledger.transactions.list_stale_pending(timedelta(seconds=input.older_than_seconds))
    return [str(tx.id) for tx in stale]


@activity.defn
async def resolve_pending_transaction(transaction_id: str) -> ResolvePendingOutput:
    ledger = get_ledger()
    tx = await ledger.transactions.get(uuid.UUID(transaction_id))
    result = await resolve_pending(ledger, tx)
    logger.info("Transaction %s resolved as %s", transaction_id, result.outcome.value)
    return ResolvePendingOutput(
        transaction_id=transaction_id,
        outcome=result.outcome.value,
        detail=result.detail,
    )
