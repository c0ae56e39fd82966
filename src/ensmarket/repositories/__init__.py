"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from ensmarket.repositories.domain import EnsDomainRepository
from ensmarket.repositories.intent import PurchaseIntentRepository
from ensmarket.repositories.ops_audit import InternalOpsAuditRepository
from ensmarket.repositories.webhook_event import (
    ReserveOutcome,
    ReserveResult,
    WebhookEventRepository,
)

__all__ = [
    "EnsDomainRepository",
    "InternalOpsAuditRepository",
    "PurchaseIntentRepository",
    "ReserveOutcome",
    "ReserveResult",
    "WebhookEventRepository",
]
