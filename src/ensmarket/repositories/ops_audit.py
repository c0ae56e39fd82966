"""InternalOpsAuditEvent repository."""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ensmarket.models.ops_audit import InternalOpsAuditEvent


class InternalOpsAuditRepository:
    """Repository for the operator audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, event: InternalOpsAuditEvent) -> InternalOpsAuditEvent:
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_recent(
        self, operations: list[str] | None, limit: int
    ) -> list[InternalOpsAuditEvent]:
        """Newest first, optionally restricted to some operations."""
        stmt = select(InternalOpsAuditEvent)
        if operations:
            stmt = stmt.where(InternalOpsAuditEvent.operation.in_(operations))  # type: ignore[attr-defined]
        stmt = stmt.order_by(InternalOpsAuditEvent.created_at.desc()).limit(limit)  # type: ignore[attr-defined]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_created_before(self, cutoff: datetime, limit: int) -> int:
        """Delete up to ``limit`` of the oldest events created at or before cutoff.

        Returns:
            Number of deleted rows
        """
        candidates = (
            select(InternalOpsAuditEvent.id)
            .where(InternalOpsAuditEvent.created_at <= cutoff)  # type: ignore[arg-type,operator]
            .order_by(InternalOpsAuditEvent.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        ids = list((await self.session.execute(candidates)).scalars().all())
        if not ids:
            return 0
        await self.session.execute(
            delete(InternalOpsAuditEvent).where(InternalOpsAuditEvent.id.in_(ids))  # type: ignore[attr-defined]
        )
        return len(ids)
