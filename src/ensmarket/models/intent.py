"""PurchaseIntent entity - ENS name purchase with lifecycle status tracking."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntentStatus(str, Enum):
    """Purchase intent lifecycle status."""

    PREPARED = "prepared"
    COMMITTED = "committed"
    REGISTERABLE = "registerable"
    REGISTERED = "registered"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({IntentStatus.REGISTERED, IntentStatus.EXPIRED, IntentStatus.FAILED})
OPEN_STATUSES = frozenset(
    {IntentStatus.PREPARED, IntentStatus.COMMITTED, IntentStatus.REGISTERABLE}
)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid intent state transition."""

    pass


def validate_tx_hash_format(v: str) -> str:
    """Validate Ethereum transaction hash format (0x + 64 hex characters)."""
    if not v.startswith("0x") or len(v) != 66:
        raise ValueError("Transaction hash must be in format 0x followed by 64 hex characters")
    try:
        int(v[2:], 16)
    except ValueError:
        raise ValueError("Transaction hash must contain valid hexadecimal characters")
    return v.lower()


class PurchaseIntent(SQLModel, table=True):
    """A user's attempt to buy one ENS name via commit/reveal."""

    __tablename__ = "ens_purchase_intents"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    wallet_address: str = Field(max_length=42)
    label: str = Field(max_length=255)
    tld: str = Field(max_length=64)
    domain_name: str = Field(max_length=320, index=True)
    duration_seconds: int = Field(gt=0)
    status: IntentStatus = Field(
        default=IntentStatus.PREPARED,
        sa_type=SAEnum(
            IntentStatus,
            name="ens_intent_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        index=True,
    )  # type: ignore[call-overload]

    commit_tx_hash: Optional[str] = Field(default=None, max_length=66, unique=True)
    register_tx_hash: Optional[str] = Field(default=None, max_length=66, unique=True)

    commit_by: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    committed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    registerable_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    register_by: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]

    failure_reason: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    updated_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )  # type: ignore[call-overload]

    @field_validator("commit_tx_hash", "register_tx_hash")
    @classmethod
    def validate_tx_hash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return validate_tx_hash_format(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def mark_committed(
        self,
        tx_hash: str,
        committed_at: datetime,
        confirmation_window: timedelta,
        max_age: timedelta,
        now: Optional[datetime] = None,
    ) -> None:
        """Transition from prepared to committed (or straight to registerable).

        Records the commit tx and derives the registration window from ``committed_at``.
        An explicit ``register_by`` that is already set is kept.

        Raises:
            InvalidStateTransition: If current status is not prepared
        """
        if self.status != IntentStatus.PREPARED:
            raise InvalidStateTransition(
                f"Cannot mark committed from {self.status.value}. Intent must be in prepared state."
            )
        now = now or utcnow()
        self.commit_tx_hash = validate_tx_hash_format(tx_hash)
        self.committed_at = committed_at
        self.registerable_at = committed_at + confirmation_window
        if self.register_by is None:
            self.register_by = committed_at + max_age
        if self.registerable_at <= now:
            self.status = IntentStatus.REGISTERABLE
        else:
            self.status = IntentStatus.COMMITTED
        self.touch(now)

    def mark_registerable(self, now: Optional[datetime] = None) -> None:
        """Transition from committed to registerable.

        Raises:
            InvalidStateTransition: If current status is not committed
        """
        if self.status != IntentStatus.COMMITTED:
            raise InvalidStateTransition(
                f"Cannot mark registerable from {self.status.value}. "
                "Intent must be in committed state."
            )
        now = now or utcnow()
        if self.registerable_at is None or self.registerable_at > now:
            self.registerable_at = now
        self.status = IntentStatus.REGISTERABLE
        self.touch(now)

    def mark_registered(self, tx_hash: str, now: Optional[datetime] = None) -> None:
        """Transition from committed/registerable to registered.

        Raises:
            InvalidStateTransition: If current status is not committed or registerable
        """
        if self.status not in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
            raise InvalidStateTransition(
                f"Cannot mark registered from {self.status.value}. "
                "Intent must be in committed or registerable state."
            )
        self.register_tx_hash = validate_tx_hash_format(tx_hash)
        self.failure_reason = None
        self.status = IntentStatus.REGISTERED
        self.touch(now)

    def mark_expired(
        self, reason: str, now: Optional[datetime] = None, force: bool = False
    ) -> None:
        """Transition from any open state to expired.

        Args:
            reason: Expiry reason kept for audit
            force: Also allow failed -> expired (operator action)

        Raises:
            InvalidStateTransition: If current status is terminal
        """
        if self.is_terminal and not (force and self.status == IntentStatus.FAILED):
            raise InvalidStateTransition(
                f"Cannot mark expired from terminal state {self.status.value}."
            )
        self.failure_reason = reason
        self.status = IntentStatus.EXPIRED
        self.touch(now)

    def mark_failed(
        self, reason: str, tx_hash: Optional[str] = None, now: Optional[datetime] = None
    ) -> None:
        """Transition from any open state to failed.

        Args:
            reason: Failure reason kept for audit
            tx_hash: Register tx hash that failed, if known

        Raises:
            InvalidStateTransition: If current status is terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        if tx_hash and self.status in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
            self.register_tx_hash = validate_tx_hash_format(tx_hash)
        self.failure_reason = reason
        self.status = IntentStatus.FAILED
        self.touch(now)

    def reopen(self, now: Optional[datetime] = None) -> None:
        """Move a failed/expired intent back to the furthest state its timestamps allow.

        Raises:
            InvalidStateTransition: If current status is not failed or expired
        """
        if self.status not in (IntentStatus.FAILED, IntentStatus.EXPIRED):
            raise InvalidStateTransition(
                f"Cannot reopen from {self.status.value}. Intent must be failed or expired."
            )
        now = now or utcnow()
        if self.committed_at is None:
            self.status = IntentStatus.PREPARED
        elif self.registerable_at is not None and self.registerable_at <= now:
            self.status = IntentStatus.REGISTERABLE
        else:
            self.status = IntentStatus.COMMITTED
        # A reverted register tx must be resubmitted.
        self.register_tx_hash = None
        self.failure_reason = None
        self.touch(now)
