"""Operational metrics and alerting for webhooks and batch workers.

Counters live in a dedicated prometheus_client registry (one per OpsMetrics
instance) so tests and multiple apps in one process never share state.
Alerts are structured log events (``ops.alert``) with a stable ``code``.
"""

from datetime import datetime
from typing import Any, Iterable

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST as PROMETHEUS_CONTENT_TYPE

from ensmarket.models.intent import utcnow

logger = structlog.get_logger()

WEBHOOK_OUTCOMES = ("processed", "failed", "dead_letter", "deduplicated")
WORKER_OUTCOMES = ("completed", "skipped", "failed")
DEFAULT_WORKERS = ("reconciliation", "tx_watcher", "webhook_retry", "ops_retention")

__all__ = ["OpsMetrics", "PROMETHEUS_CONTENT_TYPE"]


class OpsMetrics:
    """In-process metrics sink with threshold alerts."""

    def __init__(
        self,
        *,
        skip_streak_threshold: int = 10,
        retry_depth_threshold: int = 4,
        dead_letter_threshold: int = 5,
        workers: Iterable[str] = DEFAULT_WORKERS,
        registry: CollectorRegistry | None = None,
    ):
        self.skip_streak_threshold = skip_streak_threshold
        self.retry_depth_threshold = retry_depth_threshold
        self.dead_letter_threshold = dead_letter_threshold
        self.registry = registry or CollectorRegistry()

        self._webhook_events = Counter(
            "ens_webhook_events_total",
            "Webhook deliveries by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self._retry_depth_max = Gauge(
            "ens_webhook_retry_depth_max",
            "Highest attempt count seen on a webhook ledger row",
            registry=self.registry,
        )
        self._worker_runs = Counter(
            "ens_worker_runs_total",
            "Batch worker runs by outcome",
            ["worker", "outcome"],
            registry=self.registry,
        )
        self._skip_streak = Gauge(
            "ens_worker_skip_streak",
            "Consecutive runs skipped because another replica held the lock",
            ["worker"],
            registry=self.registry,
        )
        self._transitions = Counter(
            "ens_intent_transitions_total",
            "Intent state transitions by signal source and target status",
            ["source", "to_status"],
            registry=self.registry,
        )
        self._stuck_intents = Gauge(
            "ens_stuck_intents",
            "Open (prepared/committed/registerable) intents at last status check",
            registry=self.registry,
        )

        for outcome in WEBHOOK_OUTCOMES:
            self._webhook_events.labels(outcome=outcome)
        self._workers: list[str] = []
        for worker in workers:
            self._register_worker(worker)

        self._skip_streaks: dict[str, int] = {}
        self._last_runs: dict[str, dict[str, Any]] = {}
        self._dead_letter_total = 0
        self._retry_depth = 0

    def record_webhook(self, outcome: str, attempt_count: int | None = None) -> None:
        """Count a webhook outcome; dead letters and deep retries may alert."""
        self._webhook_events.labels(outcome=outcome).inc()

        if attempt_count is not None:
            self.record_retry_depth(attempt_count)

        if outcome == "dead_letter":
            self._dead_letter_total += 1
            if self._dead_letter_total % self.dead_letter_threshold == 0:
                logger.error(
                    "ops.alert",
                    code="WEBHOOK_DEAD_LETTER_THRESHOLD_REACHED",
                    dead_letter_total=self._dead_letter_total,
                    threshold=self.dead_letter_threshold,
                )

    def record_retry_depth(self, attempt_count: int) -> None:
        if attempt_count > self._retry_depth:
            self._retry_depth = attempt_count
            self._retry_depth_max.set(attempt_count)
        if attempt_count >= self.retry_depth_threshold:
            logger.warning(
                "ops.alert",
                code="WEBHOOK_RETRY_DEPTH_HIGH",
                attempt_count=attempt_count,
                threshold=self.retry_depth_threshold,
            )

    def record_worker_run(
        self,
        worker: str,
        outcome: str,
        *,
        run_id: str | None = None,
        error: str | None = None,
        at: datetime | None = None,
    ) -> None:
        """Count a batch run outcome and maintain the worker's skip streak."""
        if worker not in self._workers:
            self._register_worker(worker)
        self._worker_runs.labels(worker=worker, outcome=outcome).inc()

        if outcome == "skipped":
            streak = self._skip_streaks.get(worker, 0) + 1
            if streak % self.skip_streak_threshold == 0:
                logger.warning(
                    "ops.alert",
                    code="WORKER_SKIP_STREAK_HIGH",
                    worker=worker,
                    skip_streak=streak,
                    threshold=self.skip_streak_threshold,
                )
        else:
            streak = 0
        self._skip_streaks[worker] = streak
        self._skip_streak.labels(worker=worker).set(streak)

        if outcome == "failed":
            logger.error(
                "ops.alert", code="WORKER_RUN_FAILED", worker=worker, run_id=run_id, error=error
            )

        self._last_runs[worker] = {
            "outcome": outcome,
            "runId": run_id,
            "error": error,
            "at": (at or utcnow()).isoformat(),
        }

    def record_transition(self, source: str, to_status: str) -> None:
        self._transitions.labels(source=source, to_status=to_status).inc()

    def set_stuck_intents(self, count: int) -> None:
        self._stuck_intents.set(count)

    def skip_streak(self, worker: str) -> int:
        return self._skip_streaks.get(worker, 0)

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view of the current counters."""
        webhooks: dict[str, Any] = {
            outcome: int(self._sample("ens_webhook_events_total", {"outcome": outcome}))
            for outcome in WEBHOOK_OUTCOMES
        }
        webhooks["retryDepthMax"] = self._retry_depth

        workers: dict[str, Any] = {}
        for worker in self._workers:
            totals = {
                outcome: int(
                    self._sample("ens_worker_runs_total", {"worker": worker, "outcome": outcome})
                )
                for outcome in WORKER_OUTCOMES
            }
            workers[worker] = {
                **totals,
                "skipStreak": self._skip_streaks.get(worker, 0),
                "lastRun": self._last_runs.get(worker),
            }

        transitions: dict[str, dict[str, int]] = {}
        for metric in self._transitions.collect():
            for sample in metric.samples:
                if not sample.name.endswith("_total"):
                    continue
                source = sample.labels["source"]
                transitions.setdefault(source, {})[sample.labels["to_status"]] = int(sample.value)

        return {
            "webhooks": webhooks,
            "workers": workers,
            "transitions": transitions,
            "stuckIntents": int(self._sample("ens_stuck_intents", {})),
        }

    def render(self) -> str:
        """Prometheus text exposition of the registry."""
        return generate_latest(self.registry).decode("utf-8")

    def _register_worker(self, worker: str) -> None:
        self._workers.append(worker)
        for outcome in WORKER_OUTCOMES:
            self._worker_runs.labels(worker=worker, outcome=outcome)
        self._skip_streak.labels(worker=worker).set(0)

    def _sample(self, name: str, labels: dict[str, str]) -> float:
        return self.registry.get_sample_value(name, labels) or 0.0
