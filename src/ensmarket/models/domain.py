"""EnsDomain entity - registered ENS name owned by a marketplace user."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from ensmarket.models.intent import utcnow


class EnsDomain(SQLModel, table=True):
    """Registration record written once a register tx is confirmed."""

    __tablename__ = "ens_domains"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    name: str = Field(max_length=320, unique=True)
    label: str = Field(max_length=255)
    tld: str = Field(max_length=64)
    owner_address: str = Field(max_length=42)
    tx_hash: str = Field(max_length=66)
    intent_id: UUID = Field(foreign_key="ens_purchase_intents.id", unique=True)
    is_primary: bool = Field(default=False)
    registered_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))  # type: ignore[call-overload]
