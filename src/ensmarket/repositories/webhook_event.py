"""WebhookEvent repository.

The dedupe ledger. ``reserve`` is the only synchronisation point between concurrent
deliveries of the same logical event: the unique ``dedupe_key`` decides who processes it.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from ensmarket.models.webhook_event import WebhookEvent, WebhookEventStatus


class ReserveOutcome(str, Enum):
    RESERVED = "reserved"
    DUPLICATE_PROCESSING = "duplicate_processing"
    DUPLICATE_PROCESSED = "duplicate_processed"


@dataclass
class ReserveResult:
    outcome: ReserveOutcome
    event: WebhookEvent


class WebhookEventRepository:
    """Repository for the webhook dedupe ledger."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, event_id: UUID) -> WebhookEvent | None:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_dedupe_key(self, dedupe_key: str) -> WebhookEvent | None:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.dedupe_key == dedupe_key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def reserve(
        self,
        *,
        intent_id: UUID,
        event_type: str,
        dedupe_key: str,
        tx_hash: str | None,
        payload: dict[str, Any],
        now: datetime,
    ) -> ReserveResult:
        """Claim a delivery for processing.

        Query explanation:
        - INSERT ... ON CONFLICT (dedupe_key) DO NOTHING RETURNING id
        - On conflict: SELECT ... FOR UPDATE the existing row and inspect it
          - processing: someone else is on it (duplicate_processing)
          - processed: stored result is authoritative (duplicate_processed)
          - failed / dead_letter: take it over, attempt_count + 1 (reserved)

        Args:
            intent_id: Intent the event refers to
            event_type: Event tag (e.g. "ens.commit.confirmed")
            dedupe_key: Ledger key (see compute_dedupe_key)
            tx_hash: Transaction hash carried by the event, if any
            payload: Validated payload, stored for retries
            now: Reservation time

        Returns:
            ReserveResult with the outcome and the (locked) ledger row
        """
        stmt = (
            insert(WebhookEvent)
            .values(
                intent_id=intent_id,
                event_type=event_type,
                dedupe_key=dedupe_key,
                tx_hash=tx_hash,
                payload=payload,
                status=WebhookEventStatus.PROCESSING,
                attempt_count=1,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["dedupe_key"])
            .returning(WebhookEvent.id)  # type: ignore[arg-type]
        )
        inserted_id = (await self.session.execute(stmt)).scalar_one_or_none()

        existing = (
            await self.session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.dedupe_key == dedupe_key)  # type: ignore[arg-type]
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        if inserted_id is not None:
            return ReserveResult(ReserveOutcome.RESERVED, existing)

        if existing.status == WebhookEventStatus.PROCESSING:
            return ReserveResult(ReserveOutcome.DUPLICATE_PROCESSING, existing)
        if existing.status == WebhookEventStatus.PROCESSED:
            return ReserveResult(ReserveOutcome.DUPLICATE_PROCESSED, existing)

        existing.status = WebhookEventStatus.PROCESSING
        existing.attempt_count += 1
        existing.payload = payload
        existing.last_error_code = None
        existing.last_error_message = None
        existing.next_retry_at = None
        existing.dead_lettered_at = None
        existing.updated_at = now
        self.session.add(existing)
        await self.session.flush()
        return ReserveResult(ReserveOutcome.RESERVED, existing)

    async def mark_processed(
        self, event_id: UUID, result: dict[str, Any], now: datetime
    ) -> WebhookEvent | None:
        """Record a successful outcome. Processed rows are never overwritten."""
        event = await self._get_for_update(event_id)
        if event is None or event.status == WebhookEventStatus.PROCESSED:
            return event
        event.status = WebhookEventStatus.PROCESSED
        event.result = result
        event.processed_at = now
        event.next_retry_at = None
        event.last_error_code = None
        event.last_error_message = None
        event.updated_at = now
        self.session.add(event)
        await self.session.flush()
        return event

    async def mark_failed(
        self,
        event_id: UUID,
        *,
        code: str,
        message: str,
        now: datetime,
        next_retry_at: datetime | None,
        dead_letter: bool,
    ) -> WebhookEvent | None:
        """Record a failed attempt, scheduling a retry or dead-lettering the row."""
        event = await self._get_for_update(event_id)
        if event is None or event.status == WebhookEventStatus.PROCESSED:
            return event
        event.last_error_code = code
        event.last_error_message = message[:1000]
        event.updated_at = now
        if dead_letter:
            event.status = WebhookEventStatus.DEAD_LETTER
            event.dead_lettered_at = now
            event.next_retry_at = None
        else:
            event.status = WebhookEventStatus.FAILED
            event.next_retry_at = next_retry_at
        self.session.add(event)
        await self.session.flush()
        return event

    async def reserve_retry_batch(self, now: datetime, limit: int) -> list[WebhookEvent]:
        """Claim failed rows whose retry time has come.

        Uses FOR UPDATE SKIP LOCKED so concurrent sweeps (or a sender redelivery
        holding the row) never pick the same row twice. Claimed rows move to
        processing with attempt_count + 1.

        Args:
            now: Reference time for next_retry_at
            limit: Maximum number of rows

        Returns:
            Claimed ledger rows
        """
        result = await self.session.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,  # type: ignore[arg-type]
                WebhookEvent.next_retry_at <= now,  # type: ignore[arg-type,operator]
            )
            .order_by(WebhookEvent.next_retry_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        events = list(result.scalars().all())
        for event in events:
            event.status = WebhookEventStatus.PROCESSING
            event.attempt_count += 1
            event.next_retry_at = None
            event.updated_at = now
            self.session.add(event)
        await self.session.flush()
        return events

    async def count_by_status(self) -> dict[WebhookEventStatus, int]:
        result = await self.session.execute(
            select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)  # type: ignore[arg-type]
        )
        return {WebhookEventStatus(status): count for status, count in result.all()}

    async def count_retry_ready(self, now: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,  # type: ignore[arg-type]
                WebhookEvent.next_retry_at <= now,  # type: ignore[arg-type,operator]
            )
        )
        return result.scalar_one()

    async def delete_finished_before(
        self, status: WebhookEventStatus, cutoff: datetime, limit: int
    ) -> int:
        """Delete up to ``limit`` of the oldest processed or dead-lettered rows.

        Processed rows age by processed_at, dead-lettered rows by dead_lettered_at.
        Rows in any other status are never touched.

        Returns:
            Number of deleted rows
        """
        if status == WebhookEventStatus.PROCESSED:
            finished_at = WebhookEvent.processed_at
        elif status == WebhookEventStatus.DEAD_LETTER:
            finished_at = WebhookEvent.dead_lettered_at
        else:
            raise ValueError(f"Only finished rows can be pruned, got {status.value}")

        candidates = (
            select(WebhookEvent.id)
            .where(
                WebhookEvent.status == status,  # type: ignore[arg-type]
                finished_at <= cutoff,  # type: ignore[operator]
            )
            .order_by(finished_at.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        ids = list((await self.session.execute(candidates)).scalars().all())
        if not ids:
            return 0
        await self.session.execute(
            delete(WebhookEvent).where(WebhookEvent.id.in_(ids))  # type: ignore[attr-defined]
        )
        return len(ids)

    async def _get_for_update(self, event_id: UUID) -> WebhookEvent | None:
        result = await self.session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == event_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
