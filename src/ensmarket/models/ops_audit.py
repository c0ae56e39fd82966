"""InternalOpsAuditEvent entity - trail of operator actions on /api/internal/*."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, Index
from sqlmodel import Field, SQLModel

from ensmarket.models.intent import utcnow


class AuditOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class InternalOpsAuditEvent(SQLModel, table=True):
    """One operator request: what was asked, by whom, and how it ended."""

    __tablename__ = "internal_ops_audit_events"  # type: ignore[assignment]
    __table_args__ = (
        Index("ix_internal_ops_audit_events_operation_created_at", "operation", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    operation: str = Field(max_length=120)
    outcome: str = Field(max_length=24)
    actor: Optional[str] = Field(default=None, max_length=120)
    request_method: Optional[str] = Field(default=None, max_length=16)
    request_path: Optional[str] = Field(default=None, max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_code: Optional[str] = Field(default=None, max_length=64)
    error_message: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )  # type: ignore[call-overload]
