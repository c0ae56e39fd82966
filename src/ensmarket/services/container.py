"""Wiring of services from settings, shared by the app lifespan and the CLI."""

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ensmarket.core.config import Settings
from ensmarket.core.database import get_engine
from ensmarket.services.advisory_lock import AdvisoryLockCoordinator
from ensmarket.services.blockchain.chain_client import ChainClient
from ensmarket.services.intents import IntentTransitionService
from ensmarket.services.ops_audit import OpsAuditService
from ensmarket.services.ops_metrics import OpsMetrics
from ensmarket.services.reconciliation import ReconciliationService
from ensmarket.services.tx_watcher import TransactionWatcher
from ensmarket.services.webhooks.pipeline import WebhookPipeline
from ensmarket.services.webhooks.retention import RetentionService
from ensmarket.services.webhooks.retry import WebhookRetryService
from ensmarket.services.worker_status import WorkerStatusService
from ensmarket.uow import create_uow_factory


@dataclass
class ServiceContainer:
    settings: Settings
    uow_factory: object
    metrics: OpsMetrics
    locks: AdvisoryLockCoordinator | None
    chain_client: ChainClient | None
    intents: IntentTransitionService
    pipeline: WebhookPipeline
    reconciliation: ReconciliationService
    tx_watcher: TransactionWatcher | None
    webhook_retry: WebhookRetryService
    worker_status: WorkerStatusService
    retention: RetentionService
    ops_audit: OpsAuditService


def build_container(
    settings: Settings,
    *,
    uow_factory=None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    locks: AdvisoryLockCoordinator | None = None,
    chain_client: ChainClient | None = None,
    metrics: OpsMetrics | None = None,
) -> ServiceContainer:
    """Build every service from settings.

    Args:
        settings: Application settings
        uow_factory: UnitOfWork factory (derived from session_factory when omitted)
        session_factory: Async session factory; also provides the engine for locks
        locks: Lock coordinator override
        chain_client: Chain client override (built from CHAIN_RPC_URL when omitted)
        metrics: Metrics sink override
    """
    if uow_factory is None:
        if session_factory is None:
            raise ValueError("uow_factory or session_factory is required")
        uow_factory = create_uow_factory(session_factory)
    if locks is None and session_factory is not None:
        locks = AdvisoryLockCoordinator(get_engine(session_factory))
    if chain_client is None and settings.chain_rpc_url:
        chain_client = ChainClient.from_rpc_url(
            settings.chain_rpc_url, min_confirmations=settings.chain_min_confirmations
        )
    metrics = metrics or OpsMetrics(
        skip_streak_threshold=settings.alert_worker_skip_streak_threshold,
        retry_depth_threshold=settings.alert_webhook_retry_depth_threshold,
        dead_letter_threshold=settings.alert_webhook_dead_letter_threshold,
    )

    intents = IntentTransitionService(
        uow_factory,
        confirmation_window=timedelta(seconds=settings.commitment_confirmation_window_seconds),
        max_commitment_age=timedelta(seconds=settings.commitment_max_age_seconds),
        chain_client=chain_client,
        metrics=metrics,
    )
    pipeline = WebhookPipeline(
        uow_factory,
        intents,
        max_attempts=settings.webhook_retry_max_attempts,
        retry_base_delay_seconds=settings.webhook_retry_base_delay_seconds,
        retry_max_delay_seconds=settings.webhook_retry_max_delay_seconds,
        metrics=metrics,
    )

    return ServiceContainer(
        settings=settings,
        uow_factory=uow_factory,
        metrics=metrics,
        locks=locks,
        chain_client=chain_client,
        intents=intents,
        pipeline=pipeline,
        reconciliation=ReconciliationService(
            uow_factory,
            intents,
            default_limit=settings.reconciliation_limit,
            default_stale_minutes=settings.reconciliation_stale_minutes,
        ),
        tx_watcher=(
            TransactionWatcher(
                uow_factory, intents, chain_client, default_limit=settings.tx_watcher_limit
            )
            if chain_client is not None
            else None
        ),
        webhook_retry=WebhookRetryService(
            uow_factory, pipeline, default_limit=settings.webhook_retry_batch_limit
        ),
        worker_status=WorkerStatusService(uow_factory, metrics),
        retention=RetentionService(
            uow_factory,
            batch_limit=settings.ops_retention_batch_limit,
            processed_retention_days=settings.ops_webhook_processed_retention_days,
            dead_letter_retention_days=settings.ops_webhook_dead_letter_retention_days,
            audit_retention_days=settings.ops_internal_audit_retention_days,
        ),
        ops_audit=OpsAuditService(uow_factory),
    )
