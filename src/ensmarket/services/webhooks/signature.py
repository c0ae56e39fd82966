"""HMAC signature validation for ENS transaction webhooks.

Senders sign ``"{timestamp}.{raw_body}"`` with HMAC-SHA256 and send:

    x-webhook-signature: sha256=<hex digest>
    x-webhook-timestamp: <unix seconds>

The timestamp is signed in its integer form, so "0123" and "123" sign alike.

Two secrets may be active at once (current + previous) so the shared secret can be
rotated without dropping deliveries.

Security Note:
    verify_webhook_signature MUST be called before the payload is parsed.
"""

import hashlib
import hmac
import ipaddress
import re
import time

from ensmarket.services.exceptions import WebhookAuthError

SIGNATURE_PREFIX = "sha256="
SIGNATURE_RE = re.compile(r"^[0-9a-f]{64}$")


def compute_webhook_signature(secret: str, timestamp: str | int, raw_body: bytes) -> str:
    """Compute the hex HMAC-SHA256 signature for a delivery."""
    message = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(key=secret.encode("utf-8"), msg=message, digestmod=hashlib.sha256).hexdigest()


def verify_webhook_signature(
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    secrets: list[str],
    ttl_seconds: int,
    now: float | None = None,
) -> None:
    """Validate a webhook delivery.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON)
        signature: Value of x-webhook-signature (``sha256=`` prefix optional)
        timestamp: Value of x-webhook-timestamp (unix seconds)
        secrets: Accepted signing secrets
        ttl_seconds: Maximum allowed clock distance between sender and receiver
        now: Current unix time (defaults to time.time())

    Raises:
        WebhookAuthError: WEBHOOK_DISABLED (503) when no secret is configured,
            WEBHOOK_SIGNATURE_EXPIRED (401) for a stale timestamp, and
            WEBHOOK_UNAUTHORIZED (401) for anything else

    Security:
        - hmac.compare_digest() for constant-time comparison
        - The timestamp is part of the signed message, so it cannot be
          replaced to dodge the TTL check
    """
    if not secrets:
        raise WebhookAuthError(
            "Webhook processing is disabled", code="WEBHOOK_DISABLED", status_code=503
        )

    if not signature or not timestamp:
        raise WebhookAuthError("Missing webhook signature or timestamp header")

    try:
        sent_at = int(timestamp.strip())
    except ValueError:
        raise WebhookAuthError("Invalid webhook timestamp header")

    current = time.time() if now is None else now
    if abs(current - sent_at) > ttl_seconds:
        raise WebhookAuthError(
            "Webhook signature timestamp outside the allowed window",
            code="WEBHOOK_SIGNATURE_EXPIRED",
            details={"ttlSeconds": ttl_seconds},
        )

    received = signature.strip()
    if received.lower().startswith(SIGNATURE_PREFIX):
        received = received[len(SIGNATURE_PREFIX) :]
    received = received.lower()
    if not SIGNATURE_RE.match(received):
        raise WebhookAuthError("Malformed webhook signature")

    for secret in secrets:
        expected = compute_webhook_signature(secret, sent_at, raw_body)
        if hmac.compare_digest(expected, received):
            return

    raise WebhookAuthError("Invalid webhook signature")


def is_ip_allowed(client_ip: str | None, allowlist: list[str]) -> bool:
    """Check a caller IP against an allowlist of addresses or CIDR ranges.

    An empty allowlist allows everyone.
    """
    if not allowlist:
        return True
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False
