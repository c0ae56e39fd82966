"""EnsDomain repository."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ensmarket.models.domain import EnsDomain


class EnsDomainRepository:
    """Repository for registered ENS names."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_intent_id(self, intent_id: UUID) -> EnsDomain | None:
        result = await self.session.execute(
            select(EnsDomain).where(EnsDomain.intent_id == intent_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> EnsDomain | None:
        result = await self.session.execute(select(EnsDomain).where(EnsDomain.name == name))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def add(self, domain: EnsDomain) -> EnsDomain:
        self.session.add(domain)
        await self.session.flush()
        return domain

    async def clear_primary(self, user_id: str, keep_id: UUID, now: datetime) -> int:
        """Unset is_primary on every other domain the user owns.

        Returns:
            Number of domains that lost the primary flag
        """
        result = await self.session.execute(
            update(EnsDomain)
            .where(
                EnsDomain.user_id == user_id,  # type: ignore[arg-type]
                EnsDomain.id != keep_id,  # type: ignore[arg-type]
                EnsDomain.is_primary.is_(True),  # type: ignore[attr-defined]
            )
            .values(is_primary=False, updated_at=now)
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
