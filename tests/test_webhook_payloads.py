"""Webhook payload parsing tests (discriminated union on ``event``)."""

import json
from uuid import uuid4

import pytest

from ensmarket.models.webhook_event import compute_dedupe_key
from ensmarket.services.exceptions import PayloadValidationError
from ensmarket.services.webhooks.payloads import (
    CommitConfirmedEvent,
    RegisterConfirmedEvent,
    RegisterFailedEvent,
    parse_webhook_payload,
    payload_to_dict,
)
from ensmarket.services.webhooks.pipeline import dedupe_key_for, retry_delay

TX = "0x" + "ab" * 32


class TestParseWebhookPayload:
    def test_commit_confirmed(self):
        intent_id = uuid4()
        body = json.dumps(
            {"event": "ens.commit.confirmed", "data": {"intentId": str(intent_id), "txHash": TX}}
        )

        payload = parse_webhook_payload(body.encode())

        assert isinstance(payload, CommitConfirmedEvent)
        assert payload.data.intent_id == intent_id
        assert payload.data.tx_hash == TX

    def test_register_confirmed_with_primary_flag(self):
        payload = parse_webhook_payload(
            {
                "event": "ens.register.confirmed",
                "data": {"intentId": str(uuid4()), "txHash": TX, "setPrimary": True},
            }
        )

        assert isinstance(payload, RegisterConfirmedEvent)
        assert payload.data.set_primary is True

    def test_register_failed_without_tx_hash(self):
        payload = parse_webhook_payload(
            {"event": "ens.register.failed", "data": {"intentId": str(uuid4()), "reason": "nope"}}
        )

        assert isinstance(payload, RegisterFailedEvent)
        assert payload.data.tx_hash is None
        assert payload.data.reason == "nope"

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            {"event": "ens.renew.confirmed", "data": {"intentId": str(uuid4()), "txHash": TX}},
            {"event": "ens.commit.confirmed", "data": {"intentId": "not-a-uuid", "txHash": TX}},
            {"event": "ens.commit.confirmed", "data": {"intentId": str(uuid4()), "txHash": "0x12"}},
            {"event": "ens.commit.confirmed", "data": {"intentId": str(uuid4())}},
            {"event": "ens.register.failed", "data": {"intentId": str(uuid4()), "reason": ""}},
            {
                "event": "ens.register.failed",
                "data": {"intentId": str(uuid4()), "reason": "x" * 501},
            },
            {
                "event": "ens.commit.confirmed",
                "data": {"intentId": str(uuid4()), "txHash": TX, "extra": 1},
            },
        ],
    )
    def test_invalid_payloads_rejected(self, body):
        with pytest.raises(PayloadValidationError) as exc_info:
            parse_webhook_payload(body)

        assert exc_info.value.code == "WEBHOOK_PAYLOAD_INVALID"
        assert exc_info.value.status_code == 422
        assert exc_info.value.details["errors"]

    def test_payload_to_dict_uses_wire_names(self):
        intent_id = str(uuid4())
        payload = parse_webhook_payload(
            {"event": "ens.register.confirmed", "data": {"intentId": intent_id, "txHash": TX}}
        )

        assert payload_to_dict(payload) == {
            "event": "ens.register.confirmed",
            "data": {"intentId": intent_id, "txHash": TX},
        }


class TestDedupeKey:
    def test_tx_hash_case_does_not_matter(self):
        intent_id = uuid4()
        lower = parse_webhook_payload(
            {"event": "ens.commit.confirmed", "data": {"intentId": str(intent_id), "txHash": TX}}
        )
        upper = parse_webhook_payload(
            {
                "event": "ens.commit.confirmed",
                "data": {"intentId": str(intent_id), "txHash": "0x" + "AB" * 32},
            }
        )

        assert dedupe_key_for(lower) == dedupe_key_for(upper)

    def test_event_type_is_part_of_key(self):
        intent_id = uuid4()

        assert compute_dedupe_key("ens.commit.confirmed", intent_id, TX) != compute_dedupe_key(
            "ens.register.confirmed", intent_id, TX
        )

    def test_failures_without_tx_hash_keyed_by_reason(self):
        intent_id = uuid4()

        first = compute_dedupe_key("ens.register.failed", intent_id, None, "gas too low")
        second = compute_dedupe_key("ens.register.failed", intent_id, None, "user cancelled")

        assert first != second
        assert len(first) == 64


class TestRetryDelay:
    def test_exponential_backoff_with_cap(self):
        delays = [retry_delay(n, 30, 600).total_seconds() for n in range(1, 7)]

        assert delays == [30, 60, 120, 240, 480, 600]
