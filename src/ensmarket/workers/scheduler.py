"""Interval scheduler for the batch jobs.

One asyncio task per job. Each iteration is isolated: an exception is logged and
the job runs again on its next tick.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from ensmarket.services.container import ServiceContainer
from ensmarket.workers.jobs import (
    run_ops_retention_once,
    run_reconciliation_once,
    run_tx_watcher_once,
    run_webhook_retry_once,
)

logger = structlog.get_logger()


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    run: Callable[[], Awaitable[Any]]


class WorkerScheduler:
    """Runs each job immediately on start, then every interval until stopped."""

    def __init__(self, jobs: list[ScheduledJob]):
        self.jobs = jobs
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def start(self) -> None:
        self._stop_event.clear()
        for job in self.jobs:
            if job.interval_seconds <= 0:
                logger.info("worker.disabled", worker=job.name)
                continue
            task = asyncio.create_task(self._loop(job), name=f"worker:{job.name}")
            task.add_done_callback(self._on_done(job.name))
            self._tasks[job.name] = task
            logger.info("worker.started", worker=job.name, interval_seconds=job.interval_seconds)

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to finish."""
        self._stop_event.set()
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    async def _loop(self, job: ScheduledJob) -> None:
        while not self._stop_event.is_set():
            try:
                await job.run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.error", worker=job.name, error=str(e), error_type=type(e).__name__
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=job.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def _on_done(self, name: str) -> Callable[[asyncio.Task], None]:
        def callback(task: asyncio.Task) -> None:
            if task.cancelled() or self._stop_event.is_set():
                logger.info("worker.shutdown_complete", worker=name)
                return
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "worker.crashed",
                    worker=name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=exc,
                )

        return callback


def build_scheduler(container: ServiceContainer) -> WorkerScheduler:
    """Scheduler with the reconciliation, tx watcher, webhook retry and retention jobs.

    The tx watcher is disabled when no chain client is configured.
    """
    settings = container.settings
    tx_watcher_interval = (
        settings.tx_watcher_interval_seconds if container.tx_watcher is not None else 0
    )
    return WorkerScheduler(
        [
            ScheduledJob(
                name="reconciliation",
                interval_seconds=settings.reconciliation_interval_seconds,
                run=lambda: run_reconciliation_once(
                    container,
                    limit=settings.reconciliation_limit,
                    stale_minutes=settings.reconciliation_stale_minutes,
                ),
            ),
            ScheduledJob(
                name="tx_watcher",
                interval_seconds=tx_watcher_interval,
                run=lambda: run_tx_watcher_once(container, limit=settings.tx_watcher_limit),
            ),
            ScheduledJob(
                name="webhook_retry",
                interval_seconds=settings.webhook_retry_interval_seconds,
                run=lambda: run_webhook_retry_once(
                    container, limit=settings.webhook_retry_batch_limit
                ),
            ),
            ScheduledJob(
                name="ops_retention",
                interval_seconds=settings.ops_retention_interval_seconds,
                run=lambda: run_ops_retention_once(container),
            ),
        ]
    )
