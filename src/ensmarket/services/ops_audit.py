"""Audit trail for operator actions on the internal endpoints.

Every mutating internal operation (reconcile, worker runs, intent retry/expire)
leaves one row: the request, who made it, and either a compact result or the
error it ended with.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from ensmarket.models.intent import utcnow
from ensmarket.models.ops_audit import AuditOutcome, InternalOpsAuditEvent
from ensmarket.services.exceptions import ServiceError
from ensmarket.uow import UnitOfWork

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000


def _clean(value: str | None, max_length: int) -> str | None:
    """Trim; blank becomes None."""
    if value is None:
        return None
    value = value.strip()
    return value[:max_length] if value else None


@dataclass
class AuditContext:
    actor: str | None = None
    request_method: str | None = None
    request_path: str | None = None


def audit_event_to_dict(event: InternalOpsAuditEvent) -> dict[str, Any]:
    return {
        "id": str(event.id),
        "operation": event.operation,
        "outcome": event.outcome,
        "actor": event.actor,
        "requestMethod": event.request_method,
        "requestPath": event.request_path,
        "payload": event.payload,
        "result": event.result,
        "errorCode": event.error_code,
        "errorMessage": event.error_message,
        "createdAt": event.created_at.isoformat(),
    }


class OpsAuditService:
    def __init__(self, uow_factory: Callable[[], Awaitable[UnitOfWork]]):
        self.uow_factory = uow_factory

    async def record(
        self,
        *,
        operation: str,
        outcome: AuditOutcome,
        context: AuditContext | None = None,
        payload: dict[str, Any] | None = None,
        result: dict[str, Any] | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> InternalOpsAuditEvent:
        context = context or AuditContext()
        event = InternalOpsAuditEvent(
            operation=operation,
            outcome=outcome.value,
            actor=_clean(context.actor, 120),
            request_method=_clean(context.request_method, 16),
            request_path=_clean(context.request_path, 255),
            payload=payload or {},
            result=result,
            error_code=_clean(error_code, 64),
            error_message=_clean(error_message, 1000),
            created_at=utcnow(),
        )
        async with await self.uow_factory() as uow:
            await uow.ops_audit.add(event)
        return event

    async def run(
        self,
        operation: str,
        action: Callable[[], Awaitable[T]],
        *,
        context: AuditContext | None = None,
        payload: dict[str, Any] | None = None,
        summarize: Callable[[T], dict[str, Any]] | None = None,
    ) -> T:
        """Run an operator action and record how it ended.

        The action's exception is re-raised after the failure is recorded. A failed
        audit write is logged and never changes the action's outcome, since the
        action has already committed by then.

        Args:
            operation: Operation name (e.g. "ens-intent-retry")
            action: The operation itself
            context: Actor and request line
            payload: Request parameters to store
            summarize: Builds the stored result from the action's return value

        Returns:
            Whatever the action returned
        """
        try:
            value = await action()
        except Exception as e:
            error = e if isinstance(e, ServiceError) else ServiceError(str(e))
            await self._record_safely(
                operation=operation,
                outcome=AuditOutcome.FAILED,
                context=context,
                payload=payload,
                error_code=error.code,
                error_message=error.message,
            )
            raise

        await self._record_safely(
            operation=operation,
            outcome=AuditOutcome.COMPLETED,
            context=context,
            payload=payload,
            result=summarize(value) if summarize else None,
        )
        return value

    async def list_events(
        self, operations: list[str] | None = None, limit: int | None = None
    ) -> list[InternalOpsAuditEvent]:
        """Newest first; ``limit`` is clamped to 1-1000 (default 100)."""
        names = sorted({name.strip() for name in operations or [] if name.strip()})
        limit = max(1, min(limit or DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT))
        async with await self.uow_factory() as uow:
            return await uow.ops_audit.list_recent(names or None, limit)

    async def _record_safely(self, **fields: Any) -> None:
        try:
            await self.record(**fields)
        except Exception as e:
            logger.error(
                "ops_audit.write_failed",
                operation=fields["operation"],
                outcome=fields["outcome"].value,
                error=str(e),
                error_type=type(e).__name__,
            )
