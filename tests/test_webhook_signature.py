"""Unit tests for ENS transaction webhook signature validation.

Tests the timestamped HMAC-SHA256 scheme to ensure only authentic, fresh
deliveries are processed.
"""

import pytest

from ensmarket.services.exceptions import WebhookAuthError
from ensmarket.services.webhooks.signature import (
    compute_webhook_signature,
    is_ip_allowed,
    verify_webhook_signature,
)

NOW = 1_760_000_000


class TestWebhookSignatureValidation:
    """Test suite for HMAC signature validation."""

    @pytest.fixture
    def secret(self) -> str:
        """Webhook signing secret for tests."""
        return "test_signing_secret"

    @pytest.fixture
    def sample_payload(self) -> bytes:
        """Sample webhook payload as raw bytes."""
        return (
            b'{"event":"ens.commit.confirmed","data":{"intentId":'
            b'"6f1c1f0e-3c57-4a43-9a53-3f5f5b7e9a11","txHash":"0x' + b"ab" * 32 + b'"}}'
        )

    @pytest.fixture
    def valid_signature(self, sample_payload: bytes, secret: str) -> str:
        return "sha256=" + compute_webhook_signature(secret, NOW, sample_payload)

    def verify(self, body, signature, secrets, timestamp=str(NOW), now=NOW, ttl=300):
        verify_webhook_signature(
            raw_body=body,
            signature=signature,
            timestamp=timestamp,
            secrets=secrets,
            ttl_seconds=ttl,
            now=now,
        )

    def test_valid_signature_acceptance(self, sample_payload, valid_signature, secret):
        """Test that valid signatures are accepted."""
        # Act / Assert (no exception)
        self.verify(sample_payload, valid_signature, [secret])

    def test_prefix_is_optional_and_case_insensitive(self, sample_payload, secret):
        digest = compute_webhook_signature(secret, NOW, sample_payload)

        self.verify(sample_payload, digest, [secret])
        self.verify(sample_payload, "SHA256=" + digest.upper(), [secret])

    def test_previous_secret_accepted_during_rotation(
        self, sample_payload, valid_signature, secret
    ):
        # Arrange - the sender still signs with the old secret
        secrets = ["new_active_secret", secret]

        # Act / Assert
        self.verify(sample_payload, valid_signature, secrets)

    def test_invalid_signature_rejection(self, sample_payload, secret):
        """Test that invalid signatures are rejected."""
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload, "sha256=" + "0" * 64, [secret])

        assert exc_info.value.code == "WEBHOOK_UNAUTHORIZED"
        assert exc_info.value.status_code == 401

    def test_tampered_payload_rejection(self, sample_payload, valid_signature, secret):
        """Test that tampered payloads are rejected even with original signature."""
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload + b" ", valid_signature, [secret])

        assert exc_info.value.code == "WEBHOOK_UNAUTHORIZED"

    def test_timestamp_is_part_of_signed_message(self, sample_payload, valid_signature, secret):
        """Replacing the timestamp header invalidates the signature."""
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload, valid_signature, [secret], timestamp=str(NOW + 1))

        assert exc_info.value.code == "WEBHOOK_UNAUTHORIZED"

    @pytest.mark.parametrize("skew", [301, -301, 3600])
    def test_expired_timestamp_rejection(self, sample_payload, valid_signature, secret, skew):
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload, valid_signature, [secret], now=NOW + skew)

        assert exc_info.value.code == "WEBHOOK_SIGNATURE_EXPIRED"
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("header", ["0" + str(NOW), f" {NOW} ", f"+{NOW}"])
    def test_timestamp_signed_in_integer_form(
        self, sample_payload, valid_signature, secret, header
    ):
        self.verify(sample_payload, valid_signature, [secret], timestamp=header)

    def test_timestamp_at_ttl_boundary_accepted(self, sample_payload, valid_signature, secret):
        self.verify(sample_payload, valid_signature, [secret], now=NOW + 300)

    @pytest.mark.parametrize(
        "signature,timestamp",
        [(None, str(NOW)), ("sha256=" + "a" * 64, None), ("", ""), ("sha256=abc", str(NOW))],
    )
    def test_missing_or_malformed_headers(self, sample_payload, secret, signature, timestamp):
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload, signature, [secret], timestamp=timestamp)

        assert exc_info.value.code == "WEBHOOK_UNAUTHORIZED"

    def test_non_numeric_timestamp_rejected(self, sample_payload, valid_signature, secret):
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload, valid_signature, [secret], timestamp="yesterday")

        assert exc_info.value.code == "WEBHOOK_UNAUTHORIZED"

    def test_no_secret_configured(self, sample_payload, valid_signature):
        with pytest.raises(WebhookAuthError) as exc_info:
            self.verify(sample_payload, valid_signature, [])

        assert exc_info.value.code == "WEBHOOK_DISABLED"
        assert exc_info.value.status_code == 503


class TestIpAllowlist:
    def test_empty_allowlist_allows_everyone(self):
        assert is_ip_allowed("203.0.113.7", [])
        assert is_ip_allowed(None, [])

    def test_exact_address_and_cidr(self):
        allowlist = ["198.51.100.10", "10.0.0.0/8"]

        assert is_ip_allowed("198.51.100.10", allowlist)
        assert is_ip_allowed("10.20.30.40", allowlist)
        assert not is_ip_allowed("198.51.100.11", allowlist)

    def test_unknown_or_garbage_ip_rejected(self):
        assert not is_ip_allowed(None, ["10.0.0.0/8"])
        assert not is_ip_allowed("not-an-ip", ["10.0.0.0/8"])

    def test_invalid_entries_are_ignored(self):
        assert is_ip_allowed("10.1.1.1", ["bogus", "10.0.0.0/8"])
