"""PurchaseIntent repository.

Provides data access for purchase intents, including the row locks that serialise
transitions and the candidate queries used by the batch sweeps.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ensmarket.models.intent import OPEN_STATUSES, IntentStatus, PurchaseIntent


class PurchaseIntentRepository:
    """Repository for PurchaseIntent entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, intent_id: UUID) -> PurchaseIntent | None:
        result = await self.session.execute(
            select(PurchaseIntent).where(PurchaseIntent.id == intent_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, intent_id: UUID) -> PurchaseIntent | None:
        """Retrieve intent and lock its row until the transaction ends.

        Concurrent signals for the same intent (webhook, sweep, watcher) block here,
        so each transition sees the state left by the previous one.

        Args:
            intent_id: Intent's unique identifier

        Returns:
            Locked intent if found, None otherwise
        """
        result = await self.session.execute(
            select(PurchaseIntent)
            .where(PurchaseIntent.id == intent_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, intent: PurchaseIntent) -> PurchaseIntent:
        self.session.add(intent)
        await self.session.flush()
        return intent

    async def save(self, intent: PurchaseIntent) -> PurchaseIntent:
        self.session.add(intent)
        await self.session.flush()
        return intent

    async def list_reconcile_candidates(
        self, now: datetime, stale_before: datetime, limit: int
    ) -> list[PurchaseIntent]:
        """Retrieve open intents the reconciliation sweep should look at.

        Query explanation:
        - WHERE status IN (prepared, committed, registerable)
        - AND (updated_at <= stale_before OR register_by <= now OR commit_by <= now)
        - ORDER BY updated_at ASC: oldest first
        - LIMIT: batch bound

        Args:
            now: Reference time for deadlines
            stale_before: Intents untouched since this time are candidates
            limit: Maximum number of intents

        Returns:
            Candidate intents (not locked; transitions re-lock individually)
        """
        result = await self.session.execute(
            select(PurchaseIntent)
            .where(
                PurchaseIntent.status.in_(OPEN_STATUSES),  # type: ignore[attr-defined]
                or_(
                    PurchaseIntent.updated_at <= stale_before,  # type: ignore[arg-type]
                    PurchaseIntent.register_by <= now,  # type: ignore[arg-type,operator]
                    PurchaseIntent.commit_by <= now,  # type: ignore[arg-type,operator]
                ),
            )
            .order_by(PurchaseIntent.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_open(self, limit: int) -> list[PurchaseIntent]:
        """Retrieve open intents for the transaction watcher, oldest first."""
        result = await self.session.execute(
            select(PurchaseIntent)
            .where(PurchaseIntent.status.in_(OPEN_STATUSES))  # type: ignore[attr-defined]
            .order_by(PurchaseIntent.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[IntentStatus, int]:
        """Count intents per status (statuses with no rows are omitted)."""
        result = await self.session.execute(
            select(PurchaseIntent.status, func.count()).group_by(PurchaseIntent.status)  # type: ignore[arg-type]
        )
        return {IntentStatus(status): count for status, count in result.all()}
