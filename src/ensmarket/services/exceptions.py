"""Service error hierarchy.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all errors surfaced to callers (carries a stable code)
- TransientError: Retryable errors (network, RPC unavailable)
- PermanentError: Non-retryable errors (authentication, validation, invalid state)
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable message
        status_code: HTTP status the API layer renders
        details: Optional structured context
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.__class__.__doc__ or self.code
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - RPC endpoint unavailable
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters
    - Transaction reverts
    """

    pass


# Authentication errors
class WebhookAuthError(PermanentError):
    """Webhook request rejected."""

    code = "WEBHOOK_UNAUTHORIZED"
    status_code = 401


class InternalOpsAuthError(PermanentError):
    """Internal operations request rejected."""

    code = "INTERNAL_OPS_UNAUTHORIZED"
    status_code = 401


class PayloadValidationError(PermanentError):
    """Webhook payload failed validation."""

    code = "WEBHOOK_PAYLOAD_INVALID"
    status_code = 422


# Intent errors
class IntentNotFoundError(PermanentError):
    """Purchase intent not found."""

    code = "INTENT_NOT_FOUND"
    status_code = 404


class InvalidStateError(PermanentError):
    """Purchase intent is not in a state that allows this transition."""

    code = "INVALID_STATE"
    status_code = 409


class CommitTxFailedError(PermanentError):
    """Commit transaction failed."""

    code = "COMMIT_TX_FAILED"
    status_code = 409


class RegisterTxFailedError(PermanentError):
    """Register transaction failed."""

    code = "REGISTER_TX_FAILED"
    status_code = 409


# Blockchain errors
class ChainUnavailableError(TransientError):
    """Chain RPC endpoint unavailable."""

    code = "CHAIN_UNAVAILABLE"
    status_code = 503
