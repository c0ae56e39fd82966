"""Idempotent webhook processing.

Flow per delivery:
1. Reserve the dedupe key in the ledger (own transaction, committed immediately so a
   concurrent redelivery sees ``processing``)
2. Dispatch to the transition engine
3. Record the outcome on the ledger row (processed / failed with backoff / dead_letter)
"""

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from ensmarket.models.intent import utcnow
from ensmarket.models.webhook_event import WebhookEvent, WebhookEventStatus, compute_dedupe_key
from ensmarket.repositories.webhook_event import ReserveOutcome
from ensmarket.services.exceptions import (
    CommitTxFailedError,
    IntentNotFoundError,
    InvalidStateError,
    PayloadValidationError,
    RegisterTxFailedError,
    ServiceError,
)
from ensmarket.services.intents import IntentTransitionService, intent_summary
from ensmarket.services.webhooks.payloads import (
    CommitConfirmedEvent,
    RegisterConfirmedEvent,
    RegisterFailedEvent,
    WebhookPayload,
    payload_to_dict,
)
from ensmarket.uow import UnitOfWork

if TYPE_CHECKING:
    from ensmarket.services.ops_metrics import OpsMetrics

logger = structlog.get_logger()

PASSTHROUGH_ERRORS = (
    IntentNotFoundError,
    InvalidStateError,
    PayloadValidationError,
    CommitTxFailedError,
    RegisterTxFailedError,
)


def dedupe_key_for(payload: WebhookPayload) -> str:
    reason = payload.data.reason if isinstance(payload, RegisterFailedEvent) else None
    return compute_dedupe_key(payload.event, payload.data.intent_id, payload.data.tx_hash, reason)


def retry_delay(attempt_count: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential backoff: base * 2^(attempt - 1), capped at max."""
    exponent = max(attempt_count - 1, 0)
    return timedelta(seconds=min(max_seconds, base_seconds * (2**min(exponent, 32))))


class WebhookPipeline:
    """Processes validated webhook payloads against the dedupe ledger."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        intents: IntentTransitionService,
        *,
        max_attempts: int = 5,
        retry_base_delay_seconds: int = 30,
        retry_max_delay_seconds: int = 3600,
        metrics: "OpsMetrics | None" = None,
    ):
        self.uow_factory = uow_factory
        self.intents = intents
        self.max_attempts = max_attempts
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.retry_max_delay_seconds = retry_max_delay_seconds
        self.metrics = metrics

    async def handle(self, payload: WebhookPayload, now: datetime | None = None) -> dict[str, Any]:
        """Process one delivery and build the response body.

        Raises:
            ServiceError: Transition failed (the ledger row is already marked failed)
        """
        now = now or utcnow()
        intent_id = payload.data.intent_id
        dedupe_key = dedupe_key_for(payload)

        async with await self.uow_factory() as uow:
            reservation = await uow.webhook_events.reserve(
                intent_id=intent_id,
                event_type=payload.event,
                dedupe_key=dedupe_key,
                tx_hash=payload.data.tx_hash.lower() if payload.data.tx_hash else None,
                payload=payload_to_dict(payload),
                now=now,
            )
        event = reservation.event

        if reservation.outcome == ReserveOutcome.DUPLICATE_PROCESSING:
            logger.info(
                "webhook.deduplicated",
                webhook_event=payload.event,
                intent_id=str(intent_id),
                ledger_status=event.status.value,
            )
            self._record_metric("deduplicated")
            return {
                "acknowledged": True,
                "deduplicated": True,
                "processing": True,
                "event": payload.event,
                "intentId": str(intent_id),
            }

        if reservation.outcome == ReserveOutcome.DUPLICATE_PROCESSED:
            logger.info(
                "webhook.deduplicated",
                webhook_event=payload.event,
                intent_id=str(intent_id),
                ledger_status=event.status.value,
            )
            self._record_metric("deduplicated")
            return {
                "acknowledged": True,
                "deduplicated": True,
                "event": payload.event,
                "intentId": str(intent_id),
                "result": event.result,
            }

        return await self.process_reserved(event, payload, now=now)

    async def process_reserved(
        self, event: WebhookEvent, payload: WebhookPayload, now: datetime | None = None
    ) -> dict[str, Any]:
        """Dispatch a reserved ledger row and record its outcome."""
        logger.info(
            "webhook.processing",
            webhook_event=payload.event,
            intent_id=str(payload.data.intent_id),
            attempt=event.attempt_count,
        )
        try:
            result, changed = await self.dispatch(payload)
        except Exception as e:
            error = e if isinstance(e, ServiceError) else ServiceError(str(e))
            await self.record_failure(event, error, now=now)
            raise self._caller_error(payload, error) from e

        await self.record_success(event, result, now=now)
        response = {"acknowledged": True, **result}
        if not changed:
            response["deduplicated"] = True
        return response

    async def dispatch(self, payload: WebhookPayload) -> tuple[dict[str, Any], bool]:
        """Apply a payload to the transition engine.

        Returns:
            (result, changed): JSON-safe outcome and whether the intent moved
        """
        data = payload.data
        if isinstance(payload, CommitConfirmedEvent):
            outcome = await self.intents.confirm_commit(data.intent_id, data.tx_hash)
            return {"event": payload.event, "intent": intent_summary(outcome.intent)}, (
                outcome.changed
            )

        if isinstance(payload, RegisterConfirmedEvent):
            outcome = await self.intents.confirm_register(
                data.intent_id, data.tx_hash, set_primary=bool(data.set_primary)
            )
            domain = outcome.domain
            return {
                "event": payload.event,
                "intent": intent_summary(outcome.intent),
                "domain": (
                    {
                        "id": str(domain.id),
                        "name": domain.name,
                        "ownerAddress": domain.owner_address,
                        "isPrimary": domain.is_primary,
                    }
                    if domain is not None
                    else None
                ),
                "registerTxHash": outcome.intent.register_tx_hash,
            }, outcome.changed

        if isinstance(payload, RegisterFailedEvent):
            outcome = await self.intents.mark_failed(data.intent_id, data.reason, data.tx_hash)
            return {"event": payload.event, "intent": intent_summary(outcome.intent)}, (
                outcome.changed
            )

        raise PayloadValidationError(f"Unsupported webhook event: {payload.event}")

    async def record_success(
        self, event: WebhookEvent, result: dict[str, Any], now: datetime | None = None
    ) -> None:
        async with await self.uow_factory() as uow:
            await uow.webhook_events.mark_processed(event.id, result, now or utcnow())
        logger.info(
            "webhook.processed",
            webhook_event=event.event_type,
            intent_id=str(event.intent_id),
            attempt=event.attempt_count,
        )
        self._record_metric("processed")

    async def record_failure(
        self, event: WebhookEvent, error: ServiceError, now: datetime | None = None
    ) -> WebhookEventStatus:
        """Mark the ledger row failed (with backoff) or dead-lettered.

        Returns:
            Resulting ledger status
        """
        now = now or utcnow()
        dead_letter = event.attempt_count >= self.max_attempts
        next_retry_at = None
        if not dead_letter:
            next_retry_at = now + retry_delay(
                event.attempt_count, self.retry_base_delay_seconds, self.retry_max_delay_seconds
            )

        async with await self.uow_factory() as uow:
            await uow.webhook_events.mark_failed(
                event.id,
                code=error.code,
                message=error.message,
                now=now,
                next_retry_at=next_retry_at,
                dead_letter=dead_letter,
            )

        status = WebhookEventStatus.DEAD_LETTER if dead_letter else WebhookEventStatus.FAILED
        logger.warning(
            "webhook.failed",
            webhook_event=event.event_type,
            intent_id=str(event.intent_id),
            attempt=event.attempt_count,
            error_code=error.code,
            error=error.message,
            ledger_status=status.value,
            next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
        )
        self._record_metric(status.value, attempt_count=event.attempt_count)
        return status

    def _caller_error(self, payload: WebhookPayload, error: ServiceError) -> ServiceError:
        if isinstance(error, PASSTHROUGH_ERRORS):
            return error
        details = {"intentId": str(payload.data.intent_id), "cause": error.code}
        if isinstance(payload, CommitConfirmedEvent):
            return CommitTxFailedError(error.message, details=details)
        if isinstance(payload, RegisterConfirmedEvent):
            return RegisterTxFailedError(error.message, details=details)
        return error

    def _record_metric(self, outcome: str, attempt_count: int | None = None) -> None:
        if self.metrics is not None:
            self.metrics.record_webhook(outcome, attempt_count=attempt_count)
