"""Operator-facing status summary for intents, the webhook ledger and workers."""

from datetime import datetime
from typing import Any, Awaitable, Callable

from ensmarket.models.intent import OPEN_STATUSES, IntentStatus, utcnow
from ensmarket.models.webhook_event import WebhookEventStatus
from ensmarket.services.ops_metrics import OpsMetrics
from ensmarket.uow import UnitOfWork


class WorkerStatusService:
    def __init__(self, uow_factory: Callable[[], Awaitable[UnitOfWork]], metrics: OpsMetrics):
        self.uow_factory = uow_factory
        self.metrics = metrics

    async def summary(self, now: datetime | None = None) -> dict[str, Any]:
        """Counts by status plus the runtime metrics snapshot.

        ``stuckTotal`` counts open intents (prepared + committed + registerable);
        ``retryReady`` counts failed deliveries whose backoff has elapsed.
        """
        now = now or utcnow()
        async with await self.uow_factory() as uow:
            intent_counts = await uow.intents.count_by_status()
            webhook_counts = await uow.webhook_events.count_by_status()
            retry_ready = await uow.webhook_events.count_retry_ready(now)

        intents: dict[str, int] = {s.value: intent_counts.get(s, 0) for s in IntentStatus}
        stuck_total = sum(intent_counts.get(s, 0) for s in OPEN_STATUSES)
        webhooks: dict[str, int] = {s.value: webhook_counts.get(s, 0) for s in WebhookEventStatus}

        self.metrics.set_stuck_intents(stuck_total)

        return {
            "intents": {**intents, "stuckTotal": stuck_total},
            "webhooks": {**webhooks, "retryReady": retry_ready},
            "metrics": self.metrics.snapshot(),
            "generatedAt": now.isoformat(),
        }
