"""PostgreSQL advisory-lock coordination for batch jobs.

Several replicas run the same scheduler. A session-level advisory lock on a dedicated
connection makes sure only one of them executes a given job at a time; the others
skip the run instead of waiting.
"""

import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Generic, TypeVar

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger()

T = TypeVar("T")

RECONCILIATION_LOCK = "ens-reconciliation"
TX_WATCHER_LOCK = "ens-tx-watcher"
WEBHOOK_RETRY_LOCK = "ens-webhook-retry"
OPS_RETENTION_LOCK = "ens-ops-retention"


def lock_key_for(name: str) -> int:
    """Map a logical lock name to a signed 64-bit advisory-lock key.

    First 8 bytes of SHA-256, big-endian, signed (PostgreSQL bigint range).
    """
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def resolve_lock_key(resource: int | str) -> int:
    if isinstance(resource, int):
        return resource
    return lock_key_for(resource)


@dataclass
class LockHandle:
    resource: int | str
    key: int
    acquired: bool


@dataclass
class LockResult(Generic[T]):
    acquired: bool
    result: T | None = None


class AdvisoryLockCoordinator:
    """Runs tasks under a non-blocking PostgreSQL session advisory lock."""

    def __init__(self, engine: AsyncEngine):
        """Initialize coordinator.

        Args:
            engine: Async engine; each lock attempt checks out its own connection
        """
        # Autocommit: the lock is session-scoped, no transaction should stay open
        # while the task runs.
        self.engine = engine.execution_options(isolation_level="AUTOCOMMIT")

    @asynccontextmanager
    async def hold(self, resource: int | str) -> AsyncIterator[LockHandle]:
        """Try to take the lock for the duration of the block.

        Example:
            async with coordinator.hold("ens-reconciliation") as handle:
                if handle.acquired:
                    ...

        The lock is released on every exit path. If release fails the connection is
        invalidated, which ends the session and drops the lock server-side.
        """
        key = resolve_lock_key(resource)
        async with self.engine.connect() as conn:
            result = await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
            acquired = bool(result.scalar())
            handle = LockHandle(resource=resource, key=key, acquired=acquired)

            if not acquired:
                logger.info("lock.skipped", resource=str(resource), key=key)
                yield handle
                return

            logger.debug("lock.acquired", resource=str(resource), key=key)
            try:
                yield handle
            finally:
                try:
                    await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    logger.debug("lock.released", resource=str(resource), key=key)
                except Exception as e:
                    logger.error(
                        "lock.release_failed", resource=str(resource), key=key, error=str(e)
                    )
                    await conn.invalidate()

    async def run_exclusive(
        self, resource: int | str, task: Callable[[], Awaitable[T]]
    ) -> LockResult[T]:
        """Run ``task`` only if the lock is free.

        Returns:
            LockResult(acquired=False) without running the task when another
            session holds the lock, else LockResult(acquired=True, result=...)
        """
        async with self.hold(resource) as handle:
            if not handle.acquired:
                return LockResult(acquired=False)
            return LockResult(acquired=True, result=await task())
