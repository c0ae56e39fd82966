"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Webhook signature validation
- Internal operations authentication
- Operator audit context
- Access to services wired in the app lifespan
"""

import hmac
from typing import Annotated

from fastapi import Depends, Header, Request

from ensmarket.core.config import Settings
from ensmarket.services.container import ServiceContainer
from ensmarket.services.exceptions import InternalOpsAuthError, WebhookAuthError
from ensmarket.services.ops_audit import AuditContext
from ensmarket.services.webhooks.signature import is_ip_allowed, verify_webhook_signature


def get_settings(request: Request) -> Settings:
    """Get application settings (from app state, else loaded from environment)."""
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars
    return settings


def get_container(request: Request) -> ServiceContainer:
    """Get the service container built in the app lifespan.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(container: ServiceContainer = Depends(get_container)):
        ...     await container.intents.expire(intent_id, "reason")
    """
    return request.app.state.container


def get_client_ip(request: Request, trust_proxy: bool = False) -> str | None:
    """Caller IP: the socket peer, or the first X-Forwarded-For hop behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def validate_webhook_request(
    request: Request,
    x_webhook_signature: Annotated[str | None, Header()] = None,
    x_webhook_timestamp: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Authenticate a webhook delivery before any payload processing.

    Checks, in order: webhook processing enabled (a secret is configured), caller IP
    allowlist, timestamp window, HMAC-SHA256 signature.

    Returns:
        Raw request body bytes (exactly what was signed)

    Raises:
        WebhookAuthError: WEBHOOK_DISABLED (503), WEBHOOK_IP_NOT_ALLOWED (403),
            WEBHOOK_SIGNATURE_EXPIRED (401) or WEBHOOK_UNAUTHORIZED (401)
    """
    secrets = settings.webhook_secrets
    if not secrets:
        raise WebhookAuthError(
            "Webhook processing is disabled", code="WEBHOOK_DISABLED", status_code=503
        )

    client_ip = get_client_ip(request, settings.trust_proxy)
    if not is_ip_allowed(client_ip, settings.webhook_ip_allowlist_list):
        raise WebhookAuthError(
            "Webhook source IP is not allowed",
            code="WEBHOOK_IP_NOT_ALLOWED",
            status_code=403,
            details={"ip": client_ip},
        )

    raw_body = await request.body()
    verify_webhook_signature(
        raw_body=raw_body,
        signature=x_webhook_signature,
        timestamp=x_webhook_timestamp,
        secrets=secrets,
        ttl_seconds=settings.webhook_signature_ttl_seconds,
    )
    return raw_body


async def require_internal_secret(
    x_internal_secret: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for /api/internal/* endpoints.

    Raises:
        InternalOpsAuthError: INTERNAL_OPS_DISABLED (503) when no secret is configured,
            INTERNAL_OPS_UNAUTHORIZED (401) for a missing or wrong secret
    """
    accepted = settings.internal_ops_secrets
    if not accepted:
        raise InternalOpsAuthError(
            "Internal operations are disabled", code="INTERNAL_OPS_DISABLED", status_code=503
        )
    if not x_internal_secret:
        raise InternalOpsAuthError("Missing x-internal-secret header")

    candidate = x_internal_secret.encode("utf-8")
    if not any(hmac.compare_digest(candidate, s.encode("utf-8")) for s in accepted):
        raise InternalOpsAuthError("Invalid internal operations secret")


def get_audit_context(
    request: Request,
    x_internal_actor: Annotated[str | None, Header()] = None,
) -> AuditContext:
    """Who is calling an internal endpoint, for the ops audit trail.

    The actor is the optional ``x-internal-actor`` header (an operator name or a
    job runner id); the internal secret itself never identifies a person.
    """
    route = request.scope.get("route")
    return AuditContext(
        actor=x_internal_actor,
        request_method=request.method,
        request_path=getattr(route, "path", None) or request.url.path,
    )
