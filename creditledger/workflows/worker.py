"""Temporal worker entrypoint. Run with: python -m creditledger.workflows.worker"""
import asyncio
import logging

from temporalio.client import Client
from temporalio.common import WorkflowIDConflictPolicy
from temporalio.worker import Worker

from creditledger.config import settings
from creditledger.core.logging import configure_logging
from creditledger.workflows.activities import find_stale_pending, resolve_pending_transaction
from creditledger.workflows.reconcile_ledger import ReconcileLedgerInput, ReconcileLedgerWorkflow

logger = logging.getLogger(__name__)

RECONCILE_WORKFLOW_ID = "reconcile-ledger"


async def main() -> None:
    configure_logging()
    client = await Client.connect(settings.temporal_host)

    worker = Worker(
        client,
        task_queue=settings.temporal_task_queue,
        workflows=[ReconcileLedgerWorkflow],
        activities=[find_stale_pending, resolve_pending_transaction],
    )

    # Single long-running sweep per deployment; starting it again is a no-op.
    await client.start_workflow(
        ReconcileLedgerWorkflow.run,
        ReconcileLedgerInput(
            older_than_seconds=settings.reconcile_stale_after_seconds,
            interval_seconds=settings.reconcile_interval_seconds,
            continuous=True,
        ),
        id=RECONCILE_WORKFLOW_ID,
        task_queue=settings.temporal_task_queue,
        id_conflict_policy=WorkflowIDConflictPolicy.USE_EXISTING,
    )

    logger.info("Worker started on task queue: %s", settings.temporal_task_queue)
    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
