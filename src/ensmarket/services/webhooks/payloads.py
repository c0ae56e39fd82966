"""Typed webhook payloads, discriminated on ``event``."""

from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ensmarket.services.exceptions import PayloadValidationError

TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"

COMMIT_CONFIRMED = "ens.commit.confirmed"
REGISTER_CONFIRMED = "ens.register.confirmed"
REGISTER_FAILED = "ens.register.failed"


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class CommitConfirmedData(_StrictModel):
    intent_id: UUID = Field(alias="intentId")
    tx_hash: str = Field(alias="txHash", pattern=TX_HASH_PATTERN)


class RegisterConfirmedData(_StrictModel):
    intent_id: UUID = Field(alias="intentId")
    tx_hash: str = Field(alias="txHash", pattern=TX_HASH_PATTERN)
    set_primary: Optional[bool] = Field(default=None, alias="setPrimary")


class RegisterFailedData(_StrictModel):
    intent_id: UUID = Field(alias="intentId")
    tx_hash: Optional[str] = Field(default=None, alias="txHash", pattern=TX_HASH_PATTERN)
    reason: str = Field(min_length=1, max_length=500)


class CommitConfirmedEvent(_StrictModel):
    event: Literal["ens.commit.confirmed"]
    data: CommitConfirmedData


class RegisterConfirmedEvent(_StrictModel):
    event: Literal["ens.register.confirmed"]
    data: RegisterConfirmedData


class RegisterFailedEvent(_StrictModel):
    event: Literal["ens.register.failed"]
    data: RegisterFailedData


WebhookPayload = Annotated[
    Union[CommitConfirmedEvent, RegisterConfirmedEvent, RegisterFailedEvent],
    Field(discriminator="event"),
]

_payload_adapter: TypeAdapter[WebhookPayload] = TypeAdapter(WebhookPayload)


def parse_webhook_payload(raw: bytes | str | dict[str, Any]) -> WebhookPayload:
    """Validate a raw body (or already-decoded dict) into a typed payload.

    Raises:
        PayloadValidationError: Malformed JSON, unknown event, or invalid fields
    """
    try:
        if isinstance(raw, dict):
            return _payload_adapter.validate_python(raw)
        return _payload_adapter.validate_json(raw)
    except ValidationError as e:
        raise PayloadValidationError(
            "Invalid webhook payload",
            details={
                "errors": [
                    {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in e.errors()
                ]
            },
        ) from e


def payload_to_dict(payload: WebhookPayload) -> dict[str, Any]:
    """Serialise back to the wire shape (camelCase), for ledger storage."""
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
