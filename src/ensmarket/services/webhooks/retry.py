"""Scheduled re-dispatch of failed webhook deliveries."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from ensmarket.models.intent import utcnow
from ensmarket.models.webhook_event import WebhookEventStatus
from ensmarket.services.exceptions import ServiceError
from ensmarket.services.webhooks.payloads import parse_webhook_payload
from ensmarket.services.webhooks.pipeline import WebhookPipeline
from ensmarket.uow import UnitOfWork

logger = structlog.get_logger()

MAX_RECORDED_ERRORS = 100
MAX_RETRY_LIMIT = 500


@dataclass
class WebhookRetryRun:
    run_id: str
    started_at: datetime
    scanned: int = 0
    processed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    finished_at: datetime | None = None

    def add_error(self, error: dict[str, Any]) -> None:
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "scanned": self.scanned,
            "processed": self.processed,
            "failed": self.failed,
            "deadLettered": self.dead_lettered,
            "errors": self.errors,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class WebhookRetryService:
    """Claims failed ledger rows whose backoff elapsed and dispatches them again."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        pipeline: WebhookPipeline,
        default_limit: int = 50,
    ):
        self.uow_factory = uow_factory
        self.pipeline = pipeline
        self.default_limit = default_limit

    async def retry(
        self, limit: int | None = None, now: datetime | None = None, run_id: str | None = None
    ) -> WebhookRetryRun:
        now = now or utcnow()
        limit = max(1, min(limit or self.default_limit, MAX_RETRY_LIMIT))
        run = WebhookRetryRun(run_id=run_id or str(uuid.uuid4()), started_at=utcnow())

        async with await self.uow_factory() as uow:
            events = await uow.webhook_events.reserve_retry_batch(now, limit)
        run.scanned = len(events)

        for event in events:
            try:
                payload = parse_webhook_payload(event.payload)
                result, _ = await self.pipeline.dispatch(payload)
            except Exception as e:
                if isinstance(e, ServiceError):
                    error = e
                else:
                    logger.exception("webhook_retry.unexpected_error", event_id=str(event.id))
                    error = ServiceError(str(e))
                status = await self.pipeline.record_failure(event, error)
                if status == WebhookEventStatus.DEAD_LETTER:
                    run.dead_lettered += 1
                else:
                    run.failed += 1
                run.add_error(
                    {
                        "eventId": str(event.id),
                        "intentId": str(event.intent_id),
                        "code": error.code,
                        "message": error.message,
                    }
                )
                continue

            await self.pipeline.record_success(event, result)
            run.processed += 1

        run.finished_at = utcnow()
        logger.info(
            "webhook_retry.run_completed",
            run_id=run.run_id,
            scanned=run.scanned,
            processed=run.processed,
            failed=run.failed,
            dead_lettered=run.dead_lettered,
        )
        return run
