"""Background batch jobs and their scheduler."""

from ensmarket.workers.jobs import (
    JobOutcome,
    run_reconciliation_once,
    run_tx_watcher_once,
    run_webhook_retry_once,
)
from ensmarket.workers.scheduler import ScheduledJob, WorkerScheduler, build_scheduler

__all__ = [
    "JobOutcome",
    "run_reconciliation_once",
    "run_tx_watcher_once",
    "run_webhook_retry_once",
    "ScheduledJob",
    "WorkerScheduler",
    "build_scheduler",
]
