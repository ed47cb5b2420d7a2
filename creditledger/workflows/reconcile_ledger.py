"""
ReconcileLedgerWorkflow — resolves transactions left pending by requests
that died between "appended" and "finalized".

One run is one sweep pass. With `continuous` set the workflow sleeps for
`interval_seconds` and continues as new, so history stays bounded.
"""
from dataclasses import dataclass, field
from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from creditledger.workflows.activities import (
        FindStalePendingInput,
        ResolvePendingOutput,
        find_stale_pending,
        resolve_pending_transaction,
    )


@dataclass
class ReconcileLedgerInput:
    older_than_seconds: int
    interval_seconds: int = 60
    continuous: bool = False


@dataclass
class ReconcileLedgerResult:
    examined: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


@workflow.defn
class ReconcileLedgerWorkflow:
    @workflow.run
    async def run(self, input: ReconcileLedgerInput) -> ReconcileLedgerResult:
        stale: list[str] = await workflow.execute_activity(
            find_stale_pending,
            FindStalePendingInput(older_than_seconds=input.older_than_seconds),
            start_to_close_timeout=timedelta(seconds=30),
            retry_policy=RetryPolicy(maximum_attempts=3),
        )

        result = ReconcileLedgerResult(examined=len(stale))
        # Sequential: resolving one transaction changes the audit of its accounts.
        for transaction_id in stale:
            resolved: ResolvePendingOutput = await workflow.execute_activity(
                resolve_pending_transaction,
                transaction_id,
                start_to_close_timeout=timedelta(seconds=30),
                retry_policy=RetryPolicy(maximum_attempts=5),
            )
            result.outcomes[resolved.outcome] = result.outcomes.get(resolved.outcome, 0) + 1
            if resolved.outcome == "skipped":
                result.skipped.append(transaction_id)

        if input.continuous:
            await workflow.sleep(timedelta(seconds=input.interval_seconds))
            workflow.continue_as_new(input)

        return result
