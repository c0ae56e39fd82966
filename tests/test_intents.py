"""IntentTransitionService tests (in-memory unit of work, fake chain client)."""

from datetime import timedelta
from uuid import uuid4

import pytest
from eth_utils.address import to_checksum_address
from fakes import make_intent, tx_hash

from ensmarket.models.intent import IntentStatus, utcnow
from ensmarket.services.blockchain.chain_client import TxStatus
from ensmarket.services.exceptions import (
    ChainUnavailableError,
    CommitTxFailedError,
    IntentNotFoundError,
    InvalidStateError,
    PermanentError,
    RegisterTxFailedError,
)
from ensmarket.services.intents import (
    REGISTER_REVERTED_REASON,
    IntentTransitionService,
    TxNotConfirmedError,
)
from ensmarket.services.ops_metrics import OpsMetrics

WINDOW = timedelta(seconds=60)


@pytest.fixture
def metrics() -> OpsMetrics:
    return OpsMetrics()


@pytest.fixture
def service(fake_uow, chain, metrics) -> IntentTransitionService:
    return IntentTransitionService(
        fake_uow,
        confirmation_window=WINDOW,
        max_commitment_age=timedelta(hours=24),
        chain_client=chain,
        metrics=metrics,
    )


def add(store, **kwargs):
    intent = make_intent(**kwargs)
    store.intents[intent.id] = intent
    return intent


@pytest.mark.asyncio
class TestCreateAndAttach:
    async def test_create_intent_normalises_name(self, service, store):
        intent = await service.create_intent(
            user_id="user-1",
            wallet_address="0x" + "12" * 20,
            label=" Alice ",
            tld=".ETH",
            duration_seconds=31536000,
        )

        assert intent.domain_name == "alice.eth"
        assert intent.wallet_address == to_checksum_address("0x" + "12" * 20)
        assert intent.status == IntentStatus.PREPARED
        assert store.intents[intent.id] is intent

    @pytest.mark.parametrize(
        "wallet,label,duration",
        [("0x1234", "alice", 100), ("0x" + "12" * 20, "al ice", 100), ("0x" + "12" * 20, "bob", 0)],
    )
    async def test_create_intent_rejects_bad_input(self, service, wallet, label, duration):
        with pytest.raises(PermanentError) as exc_info:
            await service.create_intent(
                user_id="user-1",
                wallet_address=wallet,
                label=label,
                tld="eth",
                duration_seconds=duration,
            )

        assert exc_info.value.code == "INVALID_INPUT"

    async def test_attach_commit_tx(self, service, store):
        intent = add(store)

        outcome = await service.attach_transaction(
            intent.id, "commit", "0x" + tx_hash(1)[2:].upper()
        )

        assert outcome.changed
        assert outcome.intent.commit_tx_hash == tx_hash(1)
        assert outcome.intent.status == IntentStatus.PREPARED

        again = await service.attach_transaction(intent.id, "commit", tx_hash(1))
        assert not again.changed

    async def test_attach_register_tx_requires_commitment(self, service, store):
        intent = add(store)

        with pytest.raises(InvalidStateError):
            await service.attach_transaction(intent.id, "register", tx_hash(2))

    async def test_attach_rejects_malformed_hash(self, service, store):
        intent = add(store)

        with pytest.raises(PermanentError) as exc_info:
            await service.attach_transaction(intent.id, "commit", "0xdead")

        assert exc_info.value.code == "INVALID_INPUT"


@pytest.mark.asyncio
class TestConfirmCommit:
    async def test_prepared_becomes_committed(self, service, store, chain, metrics):
        intent = add(store)
        chain.set_status(tx_hash(1), TxStatus.CONFIRMED)

        outcome = await service.confirm_commit(intent.id, tx_hash(1))

        assert outcome.changed
        assert outcome.previous_status == IntentStatus.PREPARED
        assert outcome.intent.status == IntentStatus.COMMITTED
        assert outcome.intent.registerable_at == outcome.intent.committed_at + WINDOW
        assert metrics.snapshot()["transitions"] == {"webhook": {"committed": 1}}

    async def test_old_commit_lands_in_registerable(self, service, store, chain):
        intent = add(store)
        chain.set_status(tx_hash(1), TxStatus.CONFIRMED)

        outcome = await service.confirm_commit(
            intent.id, tx_hash(1), committed_at=utcnow() - timedelta(minutes=5)
        )

        assert outcome.intent.status == IntentStatus.REGISTERABLE

    async def test_same_tx_is_a_noop(self, service, store):
        intent = add(store, status=IntentStatus.COMMITTED, commit_tx_hash=tx_hash(1))

        outcome = await service.confirm_commit(intent.id, tx_hash(1))

        assert not outcome.changed
        assert outcome.intent.status == IntentStatus.COMMITTED

    async def test_different_tx_is_invalid_state(self, service, store):
        intent = add(store, status=IntentStatus.REGISTERABLE, commit_tx_hash=tx_hash(1))

        with pytest.raises(InvalidStateError) as exc_info:
            await service.confirm_commit(intent.id, tx_hash(7))

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["status"] == "registerable"

    @pytest.mark.parametrize("status", [IntentStatus.EXPIRED, IntentStatus.FAILED])
    async def test_terminal_failure_states_rejected(self, service, store, status):
        intent = add(store, status=status)

        with pytest.raises(InvalidStateError):
            await service.confirm_commit(intent.id, tx_hash(1))

    async def test_reverted_commit(self, service, store, chain):
        intent = add(store)
        chain.set_status(tx_hash(1), TxStatus.FAILED)

        with pytest.raises(CommitTxFailedError):
            await service.confirm_commit(intent.id, tx_hash(1))

        assert store.intents[intent.id].status == IntentStatus.PREPARED

    async def test_pending_receipt_is_transient(self, service, store):
        intent = add(store)

        with pytest.raises(TxNotConfirmedError):
            await service.confirm_commit(intent.id, tx_hash(1))

    async def test_chain_outage_propagates(self, service, store, chain):
        intent = add(store)
        chain.fail_with(tx_hash(1), ChainUnavailableError("rpc down"))

        with pytest.raises(ChainUnavailableError):
            await service.confirm_commit(intent.id, tx_hash(1))

    async def test_unverified_commit_skips_chain(self, service, store, chain):
        intent = add(store)

        outcome = await service.confirm_commit(intent.id, tx_hash(1), verify=False)

        assert outcome.intent.status == IntentStatus.COMMITTED
        assert chain.calls == []

    async def test_unknown_intent(self, service):
        with pytest.raises(IntentNotFoundError) as exc_info:
            await service.confirm_commit(uuid4(), tx_hash(1))

        assert exc_info.value.status_code == 404


@pytest.mark.asyncio
class TestConfirmRegister:
    async def test_registers_and_writes_domain(self, service, store, chain):
        intent = add(store, status=IntentStatus.REGISTERABLE, commit_tx_hash=tx_hash(1))
        chain.set_status(tx_hash(2), TxStatus.CONFIRMED)

        outcome = await service.confirm_register(intent.id, tx_hash(2), set_primary=True)

        assert outcome.changed
        assert outcome.intent.status == IntentStatus.REGISTERED
        assert outcome.domain is not None
        assert outcome.domain.name == "alice.eth"
        assert outcome.domain.is_primary
        assert len(store.domains) == 1

    async def test_set_primary_clears_other_domains(self, service, store, chain):
        first = add(store, status=IntentStatus.REGISTERABLE, label="first")
        second = add(store, status=IntentStatus.REGISTERABLE, label="second")
        chain.set_status(tx_hash(2), TxStatus.CONFIRMED)
        chain.set_status(tx_hash(3), TxStatus.CONFIRMED)

        await service.confirm_register(first.id, tx_hash(2), set_primary=True)
        await service.confirm_register(second.id, tx_hash(3), set_primary=True)

        primaries = {d.name: d.is_primary for d in store.domains.values()}
        assert primaries == {"first.eth": False, "second.eth": True}

    async def test_redelivery_for_registered_intent_is_a_noop(self, service, store, chain):
        intent = add(store, status=IntentStatus.REGISTERABLE)
        chain.set_status(tx_hash(2), TxStatus.CONFIRMED)
        first = await service.confirm_register(intent.id, tx_hash(2))

        again = await service.confirm_register(intent.id, tx_hash(2))

        assert not again.changed
        assert again.intent.status == IntentStatus.REGISTERED
        assert again.domain is not None
        assert again.domain.id == first.domain.id
        assert len(store.domains) == 1

    async def test_registered_with_other_tx_is_invalid_state(self, service, store):
        intent = add(store, status=IntentStatus.REGISTERED, register_tx_hash=tx_hash(2))

        with pytest.raises(InvalidStateError):
            await service.confirm_register(intent.id, tx_hash(3))

    @pytest.mark.parametrize(
        "status", [IntentStatus.PREPARED, IntentStatus.EXPIRED, IntentStatus.FAILED]
    )
    async def test_not_committed_rejected(self, service, store, status):
        intent = add(store, status=status)

        with pytest.raises(InvalidStateError):
            await service.confirm_register(intent.id, tx_hash(2))

        assert store.domains == {}

    async def test_reverted_register_marks_failed(self, service, store, chain):
        intent = add(store, status=IntentStatus.REGISTERABLE)
        chain.set_status(tx_hash(2), TxStatus.FAILED)

        with pytest.raises(RegisterTxFailedError):
            await service.confirm_register(intent.id, tx_hash(2))

        stored = store.intents[intent.id]
        assert stored.status == IntentStatus.FAILED
        assert stored.failure_reason == REGISTER_REVERTED_REASON
        assert stored.register_tx_hash == tx_hash(2)
        assert store.domains == {}

    async def test_reregistration_of_lapsed_name_reuses_domain_row(self, service, store, chain):
        old = add(store, status=IntentStatus.REGISTERABLE, user_id="user-1")
        new = add(store, status=IntentStatus.REGISTERABLE, user_id="user-2")
        chain.set_status(tx_hash(2), TxStatus.CONFIRMED)
        chain.set_status(tx_hash(3), TxStatus.CONFIRMED)

        await service.confirm_register(old.id, tx_hash(2))
        outcome = await service.confirm_register(new.id, tx_hash(3))

        assert len(store.domains) == 1
        assert outcome.domain.user_id == "user-2"
        assert outcome.domain.intent_id == new.id


@pytest.mark.asyncio
class TestFailureAndTimeTransitions:
    async def test_mark_failed_open_intent(self, service, store):
        intent = add(store, status=IntentStatus.COMMITTED)

        outcome = await service.mark_failed(intent.id, "Relay gave up")

        assert outcome.changed
        assert outcome.intent.status == IntentStatus.FAILED

    async def test_mark_failed_terminal_returns_unchanged(self, service, store):
        intent = add(store, status=IntentStatus.REGISTERED)

        outcome = await service.mark_failed(intent.id, "late")

        assert not outcome.changed
        assert outcome.intent.status == IntentStatus.REGISTERED

    async def test_promote_committed(self, service, store):
        intent = add(store, status=IntentStatus.COMMITTED, committed_at=utcnow() - WINDOW)

        outcome = await service.promote_registerable(intent.id)

        assert outcome.changed
        assert outcome.intent.status == IntentStatus.REGISTERABLE

    @pytest.mark.parametrize(
        "status", [IntentStatus.REGISTERABLE, IntentStatus.REGISTERED, IntentStatus.EXPIRED]
    )
    async def test_promote_is_idempotent(self, service, store, status):
        intent = add(store, status=status)

        outcome = await service.promote_registerable(intent.id)

        assert not outcome.changed
        assert outcome.intent.status == status

    async def test_promote_prepared_rejected(self, service, store):
        intent = add(store)

        with pytest.raises(InvalidStateError):
            await service.promote_registerable(intent.id)

    async def test_expire_and_expire_again(self, service, store):
        intent = add(store, status=IntentStatus.COMMITTED)

        first = await service.expire(intent.id, "Deadline passed")
        second = await service.expire(intent.id, "Deadline passed")

        assert first.changed
        assert first.intent.status == IntentStatus.EXPIRED
        assert not second.changed


@pytest.mark.asyncio
class TestOperatorOps:
    async def test_retry_failed_intent(self, service, store):
        intent = add(store, status=IntentStatus.FAILED, failure_reason="boom")

        outcome = await service.retry_intent(intent.id, "support ticket 12")

        assert outcome.changed
        assert outcome.intent.status == IntentStatus.PREPARED

    async def test_retry_open_intent_is_a_noop(self, service, store):
        intent = add(store, status=IntentStatus.COMMITTED)

        outcome = await service.retry_intent(intent.id)

        assert not outcome.changed

    async def test_retry_registered_rejected(self, service, store):
        intent = add(store, status=IntentStatus.REGISTERED)

        with pytest.raises(InvalidStateError):
            await service.retry_intent(intent.id)

    async def test_force_expire_failed_intent(self, service, store):
        intent = add(store, status=IntentStatus.FAILED)

        outcome = await service.force_expire(intent.id)

        assert outcome.changed
        assert outcome.intent.status == IntentStatus.EXPIRED
        assert outcome.intent.failure_reason == "Expired by operator"

    async def test_force_expire_registered_rejected(self, service, store):
        intent = add(store, status=IntentStatus.REGISTERED)

        with pytest.raises(InvalidStateError):
            await service.force_expire(intent.id)
