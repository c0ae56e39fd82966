"""Unit of Work over the intent store, the webhook ledger and the ops audit trail.

One UnitOfWork is one transaction. Transitions, ledger reservations and sweep scans
each open their own, so a row lock taken inside never outlives the operation.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ensmarket.repositories.domain import EnsDomainRepository
from ensmarket.repositories.intent import PurchaseIntentRepository
from ensmarket.repositories.ops_audit import InternalOpsAuditRepository
from ensmarket.repositories.webhook_event import WebhookEventRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction scope exposing the intent, domain, ledger and audit repositories.

    Example:
        async with await uow_factory() as uow:
            intent = await uow.intents.get_for_update(intent_id)
            intent.mark_registerable()
            await uow.intents.save(intent)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.intents = PurchaseIntentRepository(session)
        self.domains = EnsDomainRepository(session)
        self.webhook_events = WebhookEventRepository(session)
        self.ops_audit = InternalOpsAuditRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Commit on clean exit, roll back otherwise; the session is always closed.

        Returns:
            False, so the exception (if any) propagates to the caller
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Build the ``uow_factory`` callable every service receives.

    Services only see this callable, so unit tests can pass an in-memory
    equivalent with the same ``async with await uow_factory() as uow`` shape.
    """

    async def _create_uow():
        return UnitOfWork(session_factory())

    return _create_uow
