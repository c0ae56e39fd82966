"""Fallback transaction watcher.

Polls the chain for the commit/register transactions recorded on open intents, so an
intent still converges when its webhook never arrives.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from ensmarket.models.intent import IntentStatus, PurchaseIntent, utcnow
from ensmarket.services.blockchain.chain_client import ChainClient, TxStatus
from ensmarket.services.exceptions import ServiceError
from ensmarket.services.intents import (
    COMMIT_REVERTED_REASON,
    REGISTER_REVERTED_REASON,
    IntentTransitionService,
    TransitionResult,
)
from ensmarket.services.reconciliation import (
    COMMIT_DEADLINE_REASON,
    COMMITMENT_EXPIRED_REASON,
    IntentTransitionRecord,
    clamp,
)
from ensmarket.uow import UnitOfWork

logger = structlog.get_logger()

MAX_LIMIT = 500
MAX_RECORDED_ERRORS = 50
UNHANDLED_ERROR_CODE = "WATCHER_UNHANDLED_ERROR"
SOURCE = "tx_watcher"


@dataclass
class WatcherRun:
    run_id: str
    limit: int
    started_at: datetime
    scanned: int = 0
    checked_commit_tx: int = 0
    checked_register_tx: int = 0
    synced_commitments: int = 0
    promoted_to_registerable: int = 0
    synced_registrations: int = 0
    failed_transactions: int = 0
    expired: int = 0
    unchanged: int = 0
    failed: int = 0
    transitions: list[IntentTransitionRecord] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    finished_at: datetime | None = None

    def add_error(self, intent_id: str, code: str, message: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append({"intentId": intent_id, "code": code, "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "scanned": self.scanned,
            "checkedCommitTx": self.checked_commit_tx,
            "checkedRegisterTx": self.checked_register_tx,
            "syncedCommitments": self.synced_commitments,
            "promotedToRegisterable": self.promoted_to_registerable,
            "syncedRegistrations": self.synced_registrations,
            "failedTransactions": self.failed_transactions,
            "expired": self.expired,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "intents": [t.to_dict() for t in self.transitions],
            "errors": self.errors,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class TransactionWatcher:
    """Converges open intents with on-chain receipts."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        intents: IntentTransitionService,
        chain_client: ChainClient,
        *,
        default_limit: int = 100,
    ):
        self.uow_factory = uow_factory
        self.intents = intents
        self.chain_client = chain_client
        self.default_limit = default_limit

    async def watch(
        self, limit: int | None = None, now: datetime | None = None, run_id: str | None = None
    ) -> WatcherRun:
        """Check every open intent once (oldest updated_at first).

        Per-intent failures are collected in ``errors`` and never abort the run.
        """
        now = now or utcnow()
        limit = clamp(limit, self.default_limit, MAX_LIMIT)
        run = WatcherRun(run_id=run_id or str(uuid.uuid4()), limit=limit, started_at=utcnow())

        async with await self.uow_factory() as uow:
            candidates = await uow.intents.list_open(limit)
        run.scanned = len(candidates)

        for intent in candidates:
            try:
                outcome, reason = await self._sync_intent(intent, now, run)
            except ServiceError as e:
                run.add_error(str(intent.id), e.code, e.message)
                logger.warning(
                    "tx_watcher.intent_failed",
                    run_id=run.run_id,
                    intent_id=str(intent.id),
                    error_code=e.code,
                    error=e.message,
                )
                continue
            except Exception as e:
                run.add_error(str(intent.id), UNHANDLED_ERROR_CODE, str(e))
                logger.exception(
                    "tx_watcher.intent_failed", run_id=run.run_id, intent_id=str(intent.id)
                )
                continue

            if outcome is None or not outcome.changed:
                run.unchanged += 1
                continue

            run.transitions.append(
                IntentTransitionRecord(
                    intent_id=str(intent.id),
                    domain_name=intent.domain_name,
                    previous_status=outcome.previous_status,
                    next_status=outcome.intent.status,
                    reason=reason,
                )
            )

        run.finished_at = utcnow()
        logger.info(
            "tx_watcher.run_completed",
            run_id=run.run_id,
            scanned=run.scanned,
            checked_commit_tx=run.checked_commit_tx,
            checked_register_tx=run.checked_register_tx,
            synced_commitments=run.synced_commitments,
            synced_registrations=run.synced_registrations,
            failed_transactions=run.failed_transactions,
            expired=run.expired,
            unchanged=run.unchanged,
            failed=run.failed,
        )
        return run

    async def _sync_intent(
        self, intent: PurchaseIntent, now: datetime, run: WatcherRun
    ) -> tuple[TransitionResult | None, str]:
        status = intent.status

        if intent.register_tx_hash and status in (
            IntentStatus.COMMITTED,
            IntentStatus.REGISTERABLE,
        ):
            run.checked_register_tx += 1
            tx_status = await self.chain_client.get_transaction_status(intent.register_tx_hash)
            if tx_status == TxStatus.CONFIRMED:
                outcome = await self.intents.confirm_register(
                    intent.id, intent.register_tx_hash, verify=False, source=SOURCE, now=now
                )
                if outcome.changed:
                    run.synced_registrations += 1
                return outcome, "Register transaction confirmed on chain"
            if tx_status == TxStatus.FAILED:
                outcome = await self.intents.mark_failed(
                    intent.id,
                    REGISTER_REVERTED_REASON,
                    tx_hash=intent.register_tx_hash,
                    source=SOURCE,
                    now=now,
                )
                if outcome.changed:
                    run.failed_transactions += 1
                return outcome, REGISTER_REVERTED_REASON

        elif intent.commit_tx_hash and status == IntentStatus.PREPARED:
            run.checked_commit_tx += 1
            tx_status = await self.chain_client.get_transaction_status(intent.commit_tx_hash)
            if tx_status == TxStatus.CONFIRMED:
                outcome = await self.intents.confirm_commit(
                    intent.id, intent.commit_tx_hash, verify=False, source=SOURCE, now=now
                )
                if outcome.changed:
                    run.synced_commitments += 1
                return outcome, "Commit transaction confirmed on chain"
            if tx_status == TxStatus.FAILED:
                outcome = await self.intents.mark_failed(
                    intent.id, COMMIT_REVERTED_REASON, source=SOURCE, now=now
                )
                if outcome.changed:
                    run.failed_transactions += 1
                return outcome, COMMIT_REVERTED_REASON

        # Pending or no tx recorded: fall back to time-based transitions.
        if status in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
            if intent.register_by is not None and intent.register_by <= now:
                outcome = await self.intents.expire(
                    intent.id, COMMITMENT_EXPIRED_REASON, now=now, source=SOURCE
                )
                if outcome.changed:
                    run.expired += 1
                return outcome, COMMITMENT_EXPIRED_REASON

        if status == IntentStatus.PREPARED and intent.commit_by is not None:
            if intent.commit_by <= now:
                outcome = await self.intents.expire(
                    intent.id, COMMIT_DEADLINE_REASON, now=now, source=SOURCE
                )
                if outcome.changed:
                    run.expired += 1
                return outcome, COMMIT_DEADLINE_REASON

        if status == IntentStatus.COMMITTED:
            registerable_at = intent.registerable_at or (
                intent.committed_at + self.intents.confirmation_window
                if intent.committed_at
                else None
            )
            if registerable_at is not None and registerable_at <= now:
                outcome = await self.intents.promote_registerable(intent.id, now=now, source=SOURCE)
                if outcome.changed:
                    run.promoted_to_registerable += 1
                return outcome, "Confirmation window elapsed"

        return None, ""

