"""WebhookEvent entity - dedupe ledger for inbound ENS transaction webhooks."""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

from ensmarket.models.intent import utcnow


class WebhookEventStatus(str, Enum):
    """Ledger row processing status."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class WebhookEvent(SQLModel, table=True):
    """One logical webhook delivery, keyed by its dedupe key."""

    __tablename__ = "ens_webhook_events"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    intent_id: UUID = Field(index=True)
    event_type: str = Field(max_length=64)
    dedupe_key: str = Field(max_length=64, unique=True)
    tx_hash: Optional[str] = Field(default=None, max_length=66)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    status: WebhookEventStatus = Field(
        default=WebhookEventStatus.PROCESSING,
        sa_type=SAEnum(
            WebhookEventStatus,
            name="ens_webhook_event_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        index=True,
    )  # type: ignore[call-overload]
    attempt_count: int = Field(default=1, ge=0)
    last_error_code: Optional[str] = Field(default=None, max_length=64)
    last_error_message: Optional[str] = Field(default=None, max_length=1000)
    next_retry_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    dead_lettered_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    processed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]


def compute_dedupe_key(
    event: str, intent_id: UUID | str, tx_hash: Optional[str], reason: Optional[str] = None
) -> str:
    """Derive the ledger key for a delivery.

    Failure events without a tx hash fold in the reason so distinct failures
    stay distinct.
    """
    raw = f"{event}:{intent_id}:{tx_hash.lower() if tx_hash else '-'}"
    if not tx_hash and reason:
        raw = f"{raw}:{reason}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
