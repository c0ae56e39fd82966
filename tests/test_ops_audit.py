"""Operator audit trail recording and listing."""

import pytest

from ensmarket.models.ops_audit import AuditOutcome
from ensmarket.services.exceptions import IntentNotFoundError
from ensmarket.services.ops_audit import AuditContext


@pytest.mark.asyncio
class TestOpsAuditService:
    async def test_blank_strings_are_stored_as_null(self, container, store):
        event = await container.ops_audit.record(
            operation="ens-reconcile",
            outcome=AuditOutcome.COMPLETED,
            context=AuditContext(actor="   ", request_method="POST", request_path=""),
            error_message=" ",
        )

        assert event.actor is None
        assert event.request_method == "POST"
        assert event.request_path is None
        assert event.error_message is None
        assert event.payload == {}
        assert store.audit_events == [event]

    async def test_run_records_typed_failure(self, container, store):
        async def missing():
            raise IntentNotFoundError("Intent not found")

        with pytest.raises(IntentNotFoundError):
            await container.ops_audit.run("ens-intent-retry", missing, payload={"x": 1})

        [event] = store.audit_events
        assert event.outcome == "failed"
        assert event.error_code == "INTENT_NOT_FOUND"
        assert event.error_message == "Intent not found"
        assert event.payload == {"x": 1}

    async def test_run_records_unexpected_failure_as_internal_error(self, container, store):
        async def broken():
            raise RuntimeError("db gone")

        with pytest.raises(RuntimeError):
            await container.ops_audit.run("webhook-retry-run", broken)

        assert store.audit_events[0].error_code == "INTERNAL_ERROR"
        assert store.audit_events[0].error_message == "db gone"

    async def test_run_stores_summarized_result(self, container, store):
        async def action():
            return {"scanned": 3, "intents": ["big", "list"]}

        value = await container.ops_audit.run(
            "ens-reconcile", action, summarize=lambda v: {"scanned": v["scanned"]}
        )

        assert value["intents"] == ["big", "list"]
        assert store.audit_events[0].result == {"scanned": 3}

    @pytest.mark.parametrize("limit,expected", [(None, 5), (2, 2), (0, 5), (5000, 5)])
    async def test_list_limit_is_clamped(self, container, limit, expected):
        for _ in range(5):
            await container.ops_audit.record(
                operation="ens-reconcile", outcome=AuditOutcome.COMPLETED
            )

        events = await container.ops_audit.list_events(limit=limit)

        assert len(events) == expected

    async def test_list_ignores_blank_operation_filters(self, container):
        await container.ops_audit.record(operation="ens-reconcile", outcome=AuditOutcome.COMPLETED)
        await container.ops_audit.record(
            operation="ens-intent-expire", outcome=AuditOutcome.FAILED
        )

        filtered = await container.ops_audit.list_events([" ens-intent-expire ", ""])
        unfiltered = await container.ops_audit.list_events(["", "  "])

        assert [e.operation for e in filtered] == ["ens-intent-expire"]
        assert len(unfiltered) == 2
