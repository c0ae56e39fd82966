"""Lock-wrapped run-once entry points for the batch jobs.

The scheduler, the internal HTTP routes and the CLI all go through these functions,
so every run is serialised across replicas and counted in the ops metrics.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from ensmarket.services.advisory_lock import (
    OPS_RETENTION_LOCK,
    RECONCILIATION_LOCK,
    TX_WATCHER_LOCK,
    WEBHOOK_RETRY_LOCK,
    LockResult,
)
from ensmarket.services.container import ServiceContainer
from ensmarket.services.exceptions import ServiceError

logger = structlog.get_logger()


@dataclass
class JobOutcome:
    worker: str
    run_id: str
    skipped: bool
    result: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.skipped:
            return {"acknowledged": True, "runId": self.run_id, "skipped": True}
        return {"acknowledged": True, "skipped": False, **(self.result or {}), "runId": self.run_id}


async def run_reconciliation_once(
    container: ServiceContainer,
    *,
    limit: int | None = None,
    stale_minutes: int | None = None,
    dry_run: bool = False,
) -> JobOutcome:
    async def task(run_id: str):
        return await container.reconciliation.reconcile(
            limit=limit, stale_minutes=stale_minutes, dry_run=dry_run, run_id=run_id
        )

    return await _run_locked(container, "reconciliation", RECONCILIATION_LOCK, task)


async def run_tx_watcher_once(
    container: ServiceContainer, *, limit: int | None = None
) -> JobOutcome:
    watcher = container.tx_watcher
    if watcher is None:
        raise ServiceError(
            "Transaction watcher requires CHAIN_RPC_URL",
            code="CHAIN_NOT_CONFIGURED",
            status_code=503,
        )

    async def task(run_id: str):
        return await watcher.watch(limit=limit, run_id=run_id)

    return await _run_locked(container, "tx_watcher", TX_WATCHER_LOCK, task)


async def run_webhook_retry_once(
    container: ServiceContainer, *, limit: int | None = None
) -> JobOutcome:
    async def task(run_id: str):
        return await container.webhook_retry.retry(limit=limit, run_id=run_id)

    return await _run_locked(container, "webhook_retry", WEBHOOK_RETRY_LOCK, task)


async def run_ops_retention_once(
    container: ServiceContainer,
    *,
    batch_limit: int | None = None,
    processed_retention_days: int | None = None,
    dead_letter_retention_days: int | None = None,
    audit_retention_days: int | None = None,
) -> JobOutcome:
    async def task(run_id: str):
        return await container.retention.prune(
            batch_limit=batch_limit,
            processed_retention_days=processed_retention_days,
            dead_letter_retention_days=dead_letter_retention_days,
            audit_retention_days=audit_retention_days,
            run_id=run_id,
        )

    return await _run_locked(container, "ops_retention", OPS_RETENTION_LOCK, task)


async def _run_locked(
    container: ServiceContainer,
    worker: str,
    lock_name: str,
    task: Callable[[str], Awaitable[Any]],
) -> JobOutcome:
    run_id = str(uuid.uuid4())
    log = logger.bind(worker=worker, run_id=run_id)
    log.info("worker.run_started")

    try:
        if container.locks is None:
            locked = LockResult(acquired=True, result=await task(run_id))
        else:
            locked = await container.locks.run_exclusive(lock_name, lambda: task(run_id))
    except Exception as e:
        container.metrics.record_worker_run(worker, "failed", run_id=run_id, error=str(e))
        log.error("worker.run_failed", error=str(e), error_type=type(e).__name__)
        raise

    if not locked.acquired:
        container.metrics.record_worker_run(worker, "skipped", run_id=run_id)
        log.info(
            "worker.run_skipped",
            reason="lock_held",
            skip_streak=container.metrics.skip_streak(worker),
        )
        return JobOutcome(worker=worker, run_id=run_id, skipped=True)

    container.metrics.record_worker_run(worker, "completed", run_id=run_id)
    result = locked.result.to_dict() if locked.result is not None else {}
    log.info("worker.run_completed")
    return JobOutcome(worker=worker, run_id=run_id, skipped=False, result=result)
