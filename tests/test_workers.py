"""Run-once job wrappers and the interval scheduler."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from ensmarket.models.intent import utcnow
from ensmarket.models.webhook_event import WebhookEvent, WebhookEventStatus
from ensmarket.services.advisory_lock import (
    OPS_RETENTION_LOCK,
    RECONCILIATION_LOCK,
    TX_WATCHER_LOCK,
    lock_key_for,
)
from ensmarket.services.container import build_container
from ensmarket.services.exceptions import ServiceError
from ensmarket.workers.jobs import (
    run_ops_retention_once,
    run_reconciliation_once,
    run_tx_watcher_once,
    run_webhook_retry_once,
)
from ensmarket.workers.scheduler import ScheduledJob, WorkerScheduler, build_scheduler


@pytest.mark.asyncio
class TestRunOnce:
    async def test_reconciliation_runs_under_lock(self, container, locks):
        outcome = await run_reconciliation_once(container, dry_run=True)

        assert not outcome.skipped
        assert locks.attempts == [lock_key_for(RECONCILIATION_LOCK)]
        summary = outcome.to_dict()
        assert summary["acknowledged"] is True
        assert summary["skipped"] is False
        assert summary["dryRun"] is True
        assert summary["runId"] == outcome.run_id
        assert container.metrics.snapshot()["workers"]["reconciliation"]["completed"] == 1

    async def test_skipped_when_lock_held_elsewhere(self, container, locks, store):
        locks.hold_elsewhere(RECONCILIATION_LOCK)

        outcome = await run_reconciliation_once(container)

        assert outcome.skipped
        assert outcome.to_dict() == {
            "acknowledged": True,
            "runId": outcome.run_id,
            "skipped": True,
        }
        assert store.commits == 0
        assert container.metrics.skip_streak("reconciliation") == 1

    async def test_locks_are_per_job(self, container, locks):
        locks.hold_elsewhere(TX_WATCHER_LOCK)

        watcher = await run_tx_watcher_once(container)
        retry = await run_webhook_retry_once(container)

        assert watcher.skipped
        assert not retry.skipped

    async def test_failed_run_is_counted_and_raised(self, container, monkeypatch):
        async def broken(**kwargs):
            raise RuntimeError("db gone")

        monkeypatch.setattr(container.webhook_retry, "retry", broken)

        with pytest.raises(RuntimeError):
            await run_webhook_retry_once(container)

        worker = container.metrics.snapshot()["workers"]["webhook_retry"]
        assert worker["failed"] == 1
        assert worker["lastRun"]["error"] == "db gone"

    async def test_watcher_requires_chain(self, settings, fake_uow):
        container = build_container(settings, uow_factory=fake_uow)

        assert container.tx_watcher is None
        with pytest.raises(ServiceError) as exc_info:
            await run_tx_watcher_once(container)

        assert exc_info.value.code == "CHAIN_NOT_CONFIGURED"

    async def test_ops_retention_runs_under_its_own_lock(self, container, locks, store):
        old = utcnow() - timedelta(days=40)
        event = WebhookEvent(
            intent_id=uuid4(),
            event_type="ens.commit.confirmed",
            dedupe_key="a" * 64,
            status=WebhookEventStatus.PROCESSED,
            processed_at=old,
        )
        store.events[event.id] = event

        outcome = await run_ops_retention_once(container)

        assert locks.attempts == [lock_key_for(OPS_RETENTION_LOCK)]
        assert outcome.to_dict()["deletedProcessed"] == 1
        assert store.events == {}
        assert container.metrics.snapshot()["workers"]["ops_retention"]["completed"] == 1

    async def test_ops_retention_skipped_when_lock_held(self, container, locks):
        locks.hold_elsewhere(OPS_RETENTION_LOCK)

        outcome = await run_ops_retention_once(container, batch_limit=10)

        assert outcome.skipped
        assert container.metrics.skip_streak("ops_retention") == 1

    async def test_runs_without_lock_coordinator(self, settings, fake_uow):
        container = build_container(settings, uow_factory=fake_uow)

        outcome = await run_reconciliation_once(container)

        assert container.locks is None
        assert not outcome.skipped


@pytest.mark.asyncio
class TestWorkerScheduler:
    async def test_jobs_run_immediately_then_on_interval(self):
        calls = []

        async def job():
            calls.append("tick")

        scheduler = WorkerScheduler([ScheduledJob("tick", 0.01, job)])
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert len(calls) >= 2
        assert scheduler.running == []

    async def test_disabled_job_never_starts(self):
        async def job():
            raise AssertionError("disabled job ran")

        scheduler = WorkerScheduler([ScheduledJob("off", 0, job)])
        scheduler.start()

        assert scheduler.running == []
        await scheduler.stop()

    async def test_iteration_errors_are_isolated(self):
        calls = []

        async def flaky():
            calls.append("tick")
            if len(calls) == 1:
                raise RuntimeError("first run fails")

        scheduler = WorkerScheduler([ScheduledJob("flaky", 0.01, flaky)])
        scheduler.start()
        await asyncio.sleep(0.05)

        assert scheduler.running == ["flaky"]
        await scheduler.stop()
        assert len(calls) >= 2

    async def test_build_scheduler_disables_watcher_without_chain(self, settings, fake_uow):
        container = build_container(settings, uow_factory=fake_uow)

        scheduler = build_scheduler(container)

        intervals = {job.name: job.interval_seconds for job in scheduler.jobs}
        assert intervals == {
            "reconciliation": settings.reconciliation_interval_seconds,
            "tx_watcher": 0,
            "webhook_retry": settings.webhook_retry_interval_seconds,
            "ops_retention": settings.ops_retention_interval_seconds,
        }

    async def test_build_scheduler_with_chain(self, container):
        scheduler = build_scheduler(container)

        intervals = {job.name: job.interval_seconds for job in scheduler.jobs}
        assert intervals["tx_watcher"] == container.settings.tx_watcher_interval_seconds
