"""Reconciliation sweep for purchase intents stuck in an open state.

Webhooks can be lost and users can walk away mid-flow. The sweep picks open intents
that are stale or past a deadline and applies time-based transitions:

- committed/registerable past ``register_by``: expire
- prepared past ``commit_by``: expire
- committed past ``registerable_at``: promote to registerable

Expiry always wins over promotion. Decisions are made by a pure function so a dry
run reports exactly what a real run would do.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from ensmarket.models.intent import IntentStatus, PurchaseIntent, utcnow
from ensmarket.services.exceptions import ServiceError
from ensmarket.services.intents import IntentTransitionService
from ensmarket.uow import UnitOfWork

logger = structlog.get_logger()

MAX_LIMIT = 500
MAX_STALE_MINUTES = 7 * 24 * 60

COMMITMENT_EXPIRED_REASON = "Commitment window expired during reconciliation"
COMMIT_DEADLINE_REASON = "Commit deadline passed during reconciliation"
PROMOTED_REASON = "Intent promoted to registerable by reconciliation"


class Action(str, Enum):
    EXPIRE = "expire"
    PROMOTE = "promote"
    NONE = "none"


@dataclass(frozen=True)
class Decision:
    action: Action
    next_status: IntentStatus
    reason: str | None = None


@dataclass
class IntentTransitionRecord:
    intent_id: str
    domain_name: str
    previous_status: IntentStatus
    next_status: IntentStatus
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "intentId": self.intent_id,
            "domainName": self.domain_name,
            "previousStatus": self.previous_status.value,
            "nextStatus": self.next_status.value,
            "reason": self.reason,
        }


@dataclass
class ReconciliationRun:
    run_id: str
    dry_run: bool
    stale_minutes: int
    limit: int
    started_at: datetime
    scanned: int = 0
    updated: int = 0
    expired: int = 0
    promoted_to_registerable: int = 0
    unchanged: int = 0
    failed: int = 0
    transitions: list[IntentTransitionRecord] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "scanned": self.scanned,
            "updated": self.updated,
            "expired": self.expired,
            "promotedToRegisterable": self.promoted_to_registerable,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "dryRun": self.dry_run,
            "staleMinutes": self.stale_minutes,
            "intents": [t.to_dict() for t in self.transitions],
            "errors": self.errors,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


def clamp(value: int | None, default: int, upper: int) -> int:
    """Missing or zero values fall back to the default; others clamp to 1..upper."""
    if not value:
        return default
    return max(1, min(int(value), upper))


def decide(intent: PurchaseIntent, now: datetime, confirmation_window: timedelta) -> Decision:
    """Pick the time-based transition for one intent."""
    status = intent.status

    if status in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
        if intent.register_by is not None and intent.register_by <= now:
            return Decision(Action.EXPIRE, IntentStatus.EXPIRED, COMMITMENT_EXPIRED_REASON)

    if status == IntentStatus.PREPARED:
        if intent.commit_by is not None and intent.commit_by <= now:
            return Decision(Action.EXPIRE, IntentStatus.EXPIRED, COMMIT_DEADLINE_REASON)

    if status == IntentStatus.COMMITTED:
        registerable_at = intent.registerable_at
        if registerable_at is None and intent.committed_at is not None:
            registerable_at = intent.committed_at + confirmation_window
        if registerable_at is not None and registerable_at <= now:
            return Decision(Action.PROMOTE, IntentStatus.REGISTERABLE, PROMOTED_REASON)

    return Decision(Action.NONE, status)


class ReconciliationService:
    """Runs one reconciliation sweep."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        intents: IntentTransitionService,
        *,
        default_limit: int = 100,
        default_stale_minutes: int = 15,
    ):
        self.uow_factory = uow_factory
        self.intents = intents
        self.default_limit = default_limit
        self.default_stale_minutes = default_stale_minutes

    async def reconcile(
        self,
        limit: int | None = None,
        stale_minutes: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
        run_id: str | None = None,
    ) -> ReconciliationRun:
        """Scan candidates and apply (or, for a dry run, report) transitions.

        Args:
            limit: Max intents to scan (clamped to 1..500)
            stale_minutes: Untouched-for threshold (clamped to 1..10080)
            dry_run: Compute decisions without writing
            now: Reference time
            run_id: Correlation id (generated when omitted)

        Returns:
            ReconciliationRun summary
        """
        now = now or utcnow()
        limit = clamp(limit, self.default_limit, MAX_LIMIT)
        stale_minutes = clamp(stale_minutes, self.default_stale_minutes, MAX_STALE_MINUTES)
        run = ReconciliationRun(
            run_id=run_id or str(uuid.uuid4()),
            dry_run=dry_run,
            stale_minutes=stale_minutes,
            limit=limit,
            started_at=utcnow(),
        )

        async with await self.uow_factory() as uow:
            candidates = await uow.intents.list_reconcile_candidates(
                now=now, stale_before=now - timedelta(minutes=stale_minutes), limit=limit
            )
        run.scanned = len(candidates)

        for intent in candidates:
            previous_status = intent.status
            decision = decide(intent, now, self.intents.confirmation_window)
            if decision.action == Action.NONE:
                run.unchanged += 1
                continue

            if not dry_run:
                try:
                    if decision.action == Action.EXPIRE:
                        outcome = await self.intents.expire(
                            intent.id, decision.reason or COMMITMENT_EXPIRED_REASON, now=now
                        )
                    else:
                        outcome = await self.intents.promote_registerable(intent.id, now=now)
                except ServiceError as e:
                    run.failed += 1
                    run.errors.append(
                        {"intentId": str(intent.id), "code": e.code, "message": e.message}
                    )
                    logger.warning(
                        "reconcile.intent_failed",
                        run_id=run.run_id,
                        intent_id=str(intent.id),
                        error_code=e.code,
                        error=e.message,
                    )
                    continue
                except Exception as e:
                    run.failed += 1
                    run.errors.append(
                        {"intentId": str(intent.id), "code": ServiceError.code, "message": str(e)}
                    )
                    logger.exception(
                        "reconcile.intent_failed", run_id=run.run_id, intent_id=str(intent.id)
                    )
                    continue

                if not outcome.changed:
                    run.unchanged += 1
                    continue

            run.transitions.append(
                IntentTransitionRecord(
                    intent_id=str(intent.id),
                    domain_name=intent.domain_name,
                    previous_status=previous_status,
                    next_status=decision.next_status,
                    reason=decision.reason or "",
                )
            )
            if decision.action == Action.EXPIRE:
                run.expired += 1
            else:
                run.promoted_to_registerable += 1

        run.updated = len(run.transitions)
        run.finished_at = utcnow()
        logger.info(
            "reconcile.run_completed",
            run_id=run.run_id,
            dry_run=dry_run,
            scanned=run.scanned,
            updated=run.updated,
            expired=run.expired,
            promoted_to_registerable=run.promoted_to_registerable,
            unchanged=run.unchanged,
            failed=run.failed,
        )
        return run
