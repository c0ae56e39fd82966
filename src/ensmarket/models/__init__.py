"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from ensmarket.models.domain import EnsDomain
from ensmarket.models.intent import (
    InvalidStateTransition,
    IntentStatus,
    PurchaseIntent,
)
from ensmarket.models.ops_audit import AuditOutcome, InternalOpsAuditEvent
from ensmarket.models.webhook_event import WebhookEvent, WebhookEventStatus, compute_dedupe_key

__all__ = [
    "EnsDomain",
    "PurchaseIntent",
    "IntentStatus",
    "InternalOpsAuditEvent",
    "AuditOutcome",
    "InvalidStateTransition",
    "WebhookEvent",
    "WebhookEventStatus",
    "compute_dedupe_key",
]
