"""Pruning of finished webhook ledger rows and old operator audit events.

Processed and dead-lettered ledger rows only matter for deduplication and
forensics for a while; past their retention window they are deleted in bounded
batches. Rows still in flight (processing / failed) are never pruned.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog

from ensmarket.models.intent import utcnow
from ensmarket.models.webhook_event import WebhookEventStatus
from ensmarket.uow import UnitOfWork

logger = structlog.get_logger()

MAX_BATCH_LIMIT = 5000
MAX_LEDGER_RETENTION_DAYS = 365
MAX_AUDIT_RETENTION_DAYS = 3650


def clamp(value: int | None, fallback: int, maximum: int) -> int:
    if not value:
        return fallback
    return max(1, min(value, maximum))


@dataclass
class RetentionRun:
    run_id: str
    started_at: datetime
    processed_cutoff: datetime
    dead_letter_cutoff: datetime
    audit_cutoff: datetime
    deleted_processed: int = 0
    deleted_dead_letter: int = 0
    deleted_audit_events: int = 0
    finished_at: datetime | None = None

    @property
    def scanned(self) -> int:
        return self.deleted_processed + self.deleted_dead_letter + self.deleted_audit_events

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "scanned": self.scanned,
            "deletedProcessed": self.deleted_processed,
            "deletedDeadLetter": self.deleted_dead_letter,
            "deletedAuditEvents": self.deleted_audit_events,
            "processedCutoff": self.processed_cutoff.isoformat(),
            "deadLetterCutoff": self.dead_letter_cutoff.isoformat(),
            "auditCutoff": self.audit_cutoff.isoformat(),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class RetentionService:
    """Deletes one batch per category per run; the scheduler takes care of the backlog."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        *,
        batch_limit: int = 500,
        processed_retention_days: int = 14,
        dead_letter_retention_days: int = 30,
        audit_retention_days: int = 180,
    ):
        self.uow_factory = uow_factory
        self.batch_limit = batch_limit
        self.processed_retention_days = processed_retention_days
        self.dead_letter_retention_days = dead_letter_retention_days
        self.audit_retention_days = audit_retention_days

    async def prune(
        self,
        *,
        batch_limit: int | None = None,
        processed_retention_days: int | None = None,
        dead_letter_retention_days: int | None = None,
        audit_retention_days: int | None = None,
        now: datetime | None = None,
        run_id: str | None = None,
    ) -> RetentionRun:
        """Delete finished ledger rows and audit events older than their windows.

        Args:
            batch_limit: Max rows deleted per category (1-5000)
            processed_retention_days: Age of processed rows to keep (1-365)
            dead_letter_retention_days: Age of dead-lettered rows to keep (1-365)
            audit_retention_days: Age of audit events to keep (1-3650)
            now: Reference time for the cutoffs
            run_id: Correlation id (generated when omitted)

        Returns:
            RetentionRun with per-category delete counts and the cutoffs used
        """
        now = now or utcnow()
        limit = clamp(batch_limit, self.batch_limit, MAX_BATCH_LIMIT)
        processed_days = clamp(
            processed_retention_days, self.processed_retention_days, MAX_LEDGER_RETENTION_DAYS
        )
        dead_letter_days = clamp(
            dead_letter_retention_days, self.dead_letter_retention_days, MAX_LEDGER_RETENTION_DAYS
        )
        audit_days = clamp(
            audit_retention_days, self.audit_retention_days, MAX_AUDIT_RETENTION_DAYS
        )

        run = RetentionRun(
            run_id=run_id or str(uuid.uuid4()),
            started_at=utcnow(),
            processed_cutoff=now - timedelta(days=processed_days),
            dead_letter_cutoff=now - timedelta(days=dead_letter_days),
            audit_cutoff=now - timedelta(days=audit_days),
        )

        async with await self.uow_factory() as uow:
            run.deleted_processed = await uow.webhook_events.delete_finished_before(
                WebhookEventStatus.PROCESSED, run.processed_cutoff, limit
            )
            run.deleted_dead_letter = await uow.webhook_events.delete_finished_before(
                WebhookEventStatus.DEAD_LETTER, run.dead_letter_cutoff, limit
            )
            run.deleted_audit_events = await uow.ops_audit.delete_created_before(
                run.audit_cutoff, limit
            )

        run.finished_at = utcnow()
        logger.info(
            "ops_retention.run_completed",
            run_id=run.run_id,
            deleted_processed=run.deleted_processed,
            deleted_dead_letter=run.deleted_dead_letter,
            deleted_audit_events=run.deleted_audit_events,
            batch_limit=limit,
        )
        return run
