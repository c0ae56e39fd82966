"""Internal operations endpoints (reconcile, worker runs, status, metrics, intent ops, audit).

All routes require the ``x-internal-secret`` header. Mutating routes leave a row in
the ops audit trail, whether they complete or fail.
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from ensmarket.api.dependencies import (
    get_audit_context,
    get_container,
    require_internal_secret,
)
from ensmarket.services.container import ServiceContainer
from ensmarket.services.intents import TransitionResult, intent_summary
from ensmarket.services.ops_audit import AuditContext, audit_event_to_dict
from ensmarket.services.ops_metrics import PROMETHEUS_CONTENT_TYPE
from ensmarket.workers.jobs import (
    JobOutcome,
    run_ops_retention_once,
    run_reconciliation_once,
    run_tx_watcher_once,
    run_webhook_retry_once,
)

logger = structlog.get_logger()
router = APIRouter(dependencies=[Depends(require_internal_secret)])

# Counters kept in the audit row; full run reports stay in the response only
JOB_AUDIT_KEYS = (
    "runId",
    "skipped",
    "scanned",
    "updated",
    "expired",
    "failed",
    "processed",
    "deadLettered",
    "deletedProcessed",
    "deletedDeadLetter",
    "deletedAuditEvents",
)


class ReconcileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    limit: Optional[int] = Field(default=None, ge=1)
    stale_minutes: Optional[int] = Field(default=None, ge=1, alias="staleMinutes")
    dry_run: bool = Field(default=False, alias="dryRun")


class WorkerRunRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1)


class OpsRetentionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_limit: Optional[int] = Field(default=None, ge=1, le=5000, alias="batchLimit")
    processed_retention_days: Optional[int] = Field(
        default=None, ge=1, le=365, alias="processedRetentionDays"
    )
    dead_letter_retention_days: Optional[int] = Field(
        default=None, ge=1, le=365, alias="deadLetterRetentionDays"
    )
    internal_audit_retention_days: Optional[int] = Field(
        default=None, ge=1, le=3650, alias="internalAuditRetentionDays"
    )


class IntentOpRequest(BaseModel):
    reason: Optional[str] = Field(default=None, min_length=1, max_length=500)


def summarize_job(outcome: JobOutcome) -> dict[str, Any]:
    summary = outcome.to_dict()
    return {key: summary[key] for key in JOB_AUDIT_KEYS if key in summary}


def summarize_transition(outcome: TransitionResult) -> dict[str, Any]:
    return {
        "changed": outcome.changed,
        "previousStatus": outcome.previous_status.value,
        "status": outcome.intent.status.value,
    }


@router.post("/ens/reconcile")
async def reconcile(
    body: Optional[ReconcileRequest] = None,
    container: ServiceContainer = Depends(get_container),
    audit: AuditContext = Depends(get_audit_context),
):
    """Run one reconciliation sweep now (skipped when another replica holds the lock)."""
    body = body or ReconcileRequest()
    outcome = await container.ops_audit.run(
        "ens-reconcile",
        lambda: run_reconciliation_once(
            container, limit=body.limit, stale_minutes=body.stale_minutes, dry_run=body.dry_run
        ),
        context=audit,
        payload=body.model_dump(by_alias=True),
        summarize=summarize_job,
    )
    return outcome.to_dict()


@router.post("/workers/tx-watcher/run")
async def run_tx_watcher(
    body: Optional[WorkerRunRequest] = None,
    container: ServiceContainer = Depends(get_container),
    audit: AuditContext = Depends(get_audit_context),
):
    body = body or WorkerRunRequest()
    outcome = await container.ops_audit.run(
        "tx-watcher-run",
        lambda: run_tx_watcher_once(container, limit=body.limit),
        context=audit,
        payload=body.model_dump(),
        summarize=summarize_job,
    )
    return outcome.to_dict()


@router.post("/workers/webhook-retry/run")
async def run_webhook_retry(
    body: Optional[WorkerRunRequest] = None,
    container: ServiceContainer = Depends(get_container),
    audit: AuditContext = Depends(get_audit_context),
):
    body = body or WorkerRunRequest()
    outcome = await container.ops_audit.run(
        "webhook-retry-run",
        lambda: run_webhook_retry_once(container, limit=body.limit),
        context=audit,
        payload=body.model_dump(),
        summarize=summarize_job,
    )
    return outcome.to_dict()


@router.post("/workers/ops-retention/run")
async def run_ops_retention(
    body: Optional[OpsRetentionRequest] = None,
    container: ServiceContainer = Depends(get_container),
    audit: AuditContext = Depends(get_audit_context),
):
    """Prune finished webhook deliveries and old audit events now."""
    body = body or OpsRetentionRequest()
    outcome = await container.ops_audit.run(
        "ops-retention-run",
        lambda: run_ops_retention_once(
            container,
            batch_limit=body.batch_limit,
            processed_retention_days=body.processed_retention_days,
            dead_letter_retention_days=body.dead_letter_retention_days,
            audit_retention_days=body.internal_audit_retention_days,
        ),
        context=audit,
        payload=body.model_dump(by_alias=True),
        summarize=summarize_job,
    )
    return outcome.to_dict()


@router.get("/workers/status")
async def worker_status(container: ServiceContainer = Depends(get_container)):
    return await container.worker_status.summary()


@router.get("/metrics")
async def metrics(container: ServiceContainer = Depends(get_container)):
    return Response(content=container.metrics.render(), media_type=PROMETHEUS_CONTENT_TYPE)


@router.get("/ops/audit")
async def list_audit_events(
    operation: Optional[list[str]] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1),
    container: ServiceContainer = Depends(get_container),
):
    """Recent operator actions, newest first (``?operation=`` may repeat)."""
    events = await container.ops_audit.list_events(operation, limit)
    return {"count": len(events), "events": [audit_event_to_dict(e) for e in events]}


@router.post("/ens/intents/{intent_id}/retry")
async def retry_intent(
    intent_id: UUID,
    body: Optional[IntentOpRequest] = None,
    container: ServiceContainer = Depends(get_container),
    audit: AuditContext = Depends(get_audit_context),
):
    """Reopen a failed or expired intent."""
    reason = body.reason if body else None
    outcome = await container.ops_audit.run(
        "ens-intent-retry",
        lambda: container.intents.retry_intent(intent_id, reason),
        context=audit,
        payload={"intentId": str(intent_id), "reason": reason},
        summarize=summarize_transition,
    )
    return {
        "acknowledged": True,
        "changed": outcome.changed,
        "previousStatus": outcome.previous_status.value,
        "intent": intent_summary(outcome.intent),
    }


@router.post("/ens/intents/{intent_id}/expire")
async def expire_intent(
    intent_id: UUID,
    body: Optional[IntentOpRequest] = None,
    container: ServiceContainer = Depends(get_container),
    audit: AuditContext = Depends(get_audit_context),
):
    """Force-expire an intent that is not registered."""
    reason = body.reason if body else None
    outcome = await container.ops_audit.run(
        "ens-intent-expire",
        lambda: container.intents.force_expire(intent_id, reason),
        context=audit,
        payload={"intentId": str(intent_id), "reason": reason},
        summarize=summarize_transition,
    )
    return {
        "acknowledged": True,
        "changed": outcome.changed,
        "previousStatus": outcome.previous_status.value,
        "intent": intent_summary(outcome.intent),
    }
