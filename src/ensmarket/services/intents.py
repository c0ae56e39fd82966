"""Purchase intent transition engine.

Every entry point that changes an intent (webhooks, reconciliation sweep, transaction
watcher, operator endpoints) goes through IntentTransitionService. Each operation runs
in its own unit of work with the intent row locked FOR UPDATE, so concurrent signals
for the same intent are applied one after another against fresh state.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal
from uuid import UUID

import structlog
from eth_utils.address import to_checksum_address

from ensmarket.models.domain import EnsDomain
from ensmarket.models.intent import (
    InvalidStateTransition,
    IntentStatus,
    PurchaseIntent,
    utcnow,
    validate_tx_hash_format,
)
from ensmarket.services.blockchain.chain_client import ChainClient, TxStatus
from ensmarket.services.exceptions import (
    CommitTxFailedError,
    IntentNotFoundError,
    InvalidStateError,
    PermanentError,
    RegisterTxFailedError,
    TransientError,
)
from ensmarket.uow import UnitOfWork

if TYPE_CHECKING:
    from ensmarket.services.ops_metrics import OpsMetrics

logger = structlog.get_logger()

WALLET_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
LABEL_RE = re.compile(r"^[a-z0-9-]+$")

REGISTER_REVERTED_REASON = "Register transaction reverted"
COMMIT_REVERTED_REASON = "Commit transaction reverted"

UowFactory = Callable[[], Awaitable[UnitOfWork]]
TxKind = Literal["commit", "register"]


@dataclass
class TransitionResult:
    """Outcome of one engine operation."""

    intent: PurchaseIntent
    previous_status: IntentStatus
    changed: bool
    domain: EnsDomain | None = None


def intent_summary(intent: PurchaseIntent) -> dict[str, Any]:
    """JSON-safe summary used in webhook results and API responses."""

    def iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return {
        "id": str(intent.id),
        "domainName": intent.domain_name,
        "status": intent.status.value,
        "commitTxHash": intent.commit_tx_hash,
        "registerTxHash": intent.register_tx_hash,
        "commitBy": iso(intent.commit_by),
        "committedAt": iso(intent.committed_at),
        "registerableAt": iso(intent.registerable_at),
        "registerBy": iso(intent.register_by),
        "failureReason": intent.failure_reason,
        "updatedAt": iso(intent.updated_at),
    }


class TxNotConfirmedError(TransientError):
    """Transaction has no confirmed receipt yet."""

    code = "TX_NOT_CONFIRMED"
    status_code = 503


class IntentTransitionService:
    """Applies purchase intent state transitions."""

    def __init__(
        self,
        uow_factory: UowFactory,
        *,
        confirmation_window: timedelta,
        max_commitment_age: timedelta,
        chain_client: ChainClient | None = None,
        metrics: "OpsMetrics | None" = None,
    ):
        """Initialize transition service.

        Args:
            uow_factory: Async factory returning a UnitOfWork
            confirmation_window: Minimum wait between commit and register
            max_commitment_age: How long a commitment stays usable
            chain_client: Receipt verifier; when None, signals are trusted as-is
            metrics: Optional ops metrics sink
        """
        self.uow_factory = uow_factory
        self.confirmation_window = confirmation_window
        self.max_commitment_age = max_commitment_age
        self.chain_client = chain_client
        self.metrics = metrics

    async def create_intent(
        self,
        *,
        user_id: str,
        wallet_address: str,
        label: str,
        tld: str,
        duration_seconds: int,
        commit_by: datetime | None = None,
        register_by: datetime | None = None,
        now: datetime | None = None,
    ) -> PurchaseIntent:
        """Record a new prepared intent."""
        if not WALLET_ADDRESS_RE.match(wallet_address):
            raise PermanentError(
                "wallet_address must be 0x followed by 40 hex characters",
                code="INVALID_INPUT",
                status_code=400,
            )
        label = label.strip().lower()
        tld = tld.strip().lower().lstrip(".")
        if not label or not LABEL_RE.match(label) or not tld:
            raise PermanentError(
                f"Invalid domain label: {label!r}", code="INVALID_INPUT", status_code=400
            )
        if duration_seconds <= 0:
            raise PermanentError(
                "duration_seconds must be positive", code="INVALID_INPUT", status_code=400
            )

        now = now or utcnow()
        intent = PurchaseIntent(
            user_id=user_id,
            wallet_address=to_checksum_address(wallet_address),
            label=label,
            tld=tld,
            domain_name=f"{label}.{tld}",
            duration_seconds=duration_seconds,
            status=IntentStatus.PREPARED,
            commit_by=commit_by,
            register_by=register_by,
            created_at=now,
            updated_at=now,
        )
        async with await self.uow_factory() as uow:
            await uow.intents.add(intent)

        logger.info(
            "intent.created",
            intent_id=str(intent.id),
            domain_name=intent.domain_name,
            user_id=user_id,
        )
        return intent

    async def attach_transaction(
        self, intent_id: UUID, kind: TxKind, tx_hash: str, *, now: datetime | None = None
    ) -> TransitionResult:
        """Record a submitted (not yet confirmed) commit or register tx hash.

        The transaction watcher polls recorded hashes, so a lost webhook still
        converges.
        """
        tx_hash = self._normalize_tx_hash(tx_hash)

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if kind == "commit":
                if intent.status != IntentStatus.PREPARED:
                    raise InvalidStateTransition(
                        f"Cannot attach commit tx in {intent.status.value} state."
                    )
                current = intent.commit_tx_hash
                intent.commit_tx_hash = tx_hash
            else:
                if intent.status not in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
                    raise InvalidStateTransition(
                        f"Cannot attach register tx in {intent.status.value} state."
                    )
                current = intent.register_tx_hash
                intent.register_tx_hash = tx_hash
            if current == tx_hash:
                return False, None
            intent.touch(now)
            return True, None

        return await self._apply(intent_id, "api", apply, log_event="intent.tx_attached")

    async def confirm_commit(
        self,
        intent_id: UUID,
        tx_hash: str,
        committed_at: datetime | None = None,
        *,
        verify: bool = True,
        source: str = "webhook",
        now: datetime | None = None,
    ) -> TransitionResult:
        """Apply a confirmed commit transaction.

        Args:
            intent_id: Intent to update
            tx_hash: Commit transaction hash
            committed_at: Commit time (defaults to now)
            verify: Check the receipt via the chain client first
            source: Signal source, for metrics and logs
            now: Reference time

        Raises:
            IntentNotFoundError: Unknown intent
            InvalidStateError: Expired/failed intent, or a different commit tx recorded
            CommitTxFailedError: Receipt shows the commit reverted
            TxNotConfirmedError: No confirmed receipt yet
        """
        tx_hash = self._normalize_tx_hash(tx_hash)

        if verify and self.chain_client is not None:
            intent = await self._get(intent_id)
            if intent.status == IntentStatus.PREPARED:
                status = await self.chain_client.get_transaction_status(tx_hash)
                if status == TxStatus.FAILED:
                    raise CommitTxFailedError(
                        COMMIT_REVERTED_REASON,
                        details={"intentId": str(intent_id), "txHash": tx_hash},
                    )
                if status == TxStatus.PENDING:
                    raise TxNotConfirmedError(
                        f"Commit transaction {tx_hash} is not confirmed yet",
                        details={"intentId": str(intent_id), "txHash": tx_hash},
                    )

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.status == IntentStatus.PREPARED:
                current = now or utcnow()
                intent.mark_committed(
                    tx_hash,
                    committed_at or current,
                    self.confirmation_window,
                    self.max_commitment_age,
                    now=current,
                )
                return True, None
            if intent.status in (
                IntentStatus.COMMITTED,
                IntentStatus.REGISTERABLE,
                IntentStatus.REGISTERED,
            ):
                if intent.commit_tx_hash == tx_hash:
                    return False, None
                raise InvalidStateTransition(
                    f"Intent already committed with a different transaction "
                    f"({intent.commit_tx_hash})."
                )
            raise InvalidStateTransition(
                f"Cannot confirm commit for intent in {intent.status.value} state."
            )

        return await self._apply(intent_id, source, apply)

    async def confirm_register(
        self,
        intent_id: UUID,
        tx_hash: str,
        set_primary: bool = False,
        *,
        verify: bool = True,
        source: str = "webhook",
        now: datetime | None = None,
    ) -> TransitionResult:
        """Apply a confirmed register transaction and write the domain record.

        A reverted receipt marks the intent failed before raising.

        Raises:
            IntentNotFoundError: Unknown intent
            InvalidStateError: Intent not committed/registerable, or registered
                with a different tx
            RegisterTxFailedError: Receipt shows the register reverted
            TxNotConfirmedError: No confirmed receipt yet
        """
        tx_hash = self._normalize_tx_hash(tx_hash)

        if verify and self.chain_client is not None:
            intent = await self._get(intent_id)
            if intent.status in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
                status = await self.chain_client.get_transaction_status(tx_hash)
                if status == TxStatus.FAILED:
                    await self.mark_failed(
                        intent_id, REGISTER_REVERTED_REASON, tx_hash=tx_hash, source=source
                    )
                    raise RegisterTxFailedError(
                        REGISTER_REVERTED_REASON,
                        details={"intentId": str(intent_id), "txHash": tx_hash},
                    )
                if status == TxStatus.PENDING:
                    raise TxNotConfirmedError(
                        f"Register transaction {tx_hash} is not confirmed yet",
                        details={"intentId": str(intent_id), "txHash": tx_hash},
                    )

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.status in (IntentStatus.COMMITTED, IntentStatus.REGISTERABLE):
                current = now or utcnow()
                intent.mark_registered(tx_hash, now=current)
                domain = await self._write_domain(uow, intent, tx_hash, set_primary, current)
                return True, domain
            if intent.status == IntentStatus.REGISTERED:
                if intent.register_tx_hash == tx_hash:
                    return False, await uow.domains.get_by_intent_id(intent.id)
                raise InvalidStateTransition(
                    f"Intent already registered with a different transaction "
                    f"({intent.register_tx_hash})."
                )
            raise InvalidStateTransition(
                f"Cannot confirm register for intent in {intent.status.value} state."
            )

        return await self._apply(intent_id, source, apply)

    async def mark_failed(
        self,
        intent_id: UUID,
        reason: str,
        tx_hash: str | None = None,
        *,
        source: str = "webhook",
        now: datetime | None = None,
    ) -> TransitionResult:
        """Move an open intent to failed. Terminal intents are returned unchanged."""
        if tx_hash:
            tx_hash = self._normalize_tx_hash(tx_hash)

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.is_terminal:
                return False, None
            intent.mark_failed(reason, tx_hash=tx_hash, now=now)
            return True, None

        return await self._apply(intent_id, source, apply)

    async def promote_registerable(
        self, intent_id: UUID, now: datetime | None = None, *, source: str = "reconciliation"
    ) -> TransitionResult:
        """Move a committed intent to registerable.

        Already registerable or terminal intents are a no-op, since a concurrent
        signal may have moved them on.
        """

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.status == IntentStatus.COMMITTED:
                intent.mark_registerable(now=now)
                return True, None
            if intent.status == IntentStatus.PREPARED:
                raise InvalidStateTransition("Cannot promote an uncommitted intent.")
            return False, None

        return await self._apply(intent_id, source, apply)

    async def expire(
        self,
        intent_id: UUID,
        reason: str,
        now: datetime | None = None,
        *,
        source: str = "reconciliation",
    ) -> TransitionResult:
        """Move an open intent to expired. Terminal intents are a no-op."""

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.is_terminal:
                return False, None
            intent.mark_expired(reason, now=now)
            return True, None

        return await self._apply(intent_id, source, apply)

    async def retry_intent(
        self, intent_id: UUID, reason: str | None = None, *, now: datetime | None = None
    ) -> TransitionResult:
        """Reopen a failed or expired intent (operator action).

        Raises:
            InvalidStateError: Intent is registered
        """

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.status == IntentStatus.REGISTERED:
                raise InvalidStateTransition("Cannot retry a registered intent.")
            if not intent.is_terminal:
                return False, None
            intent.reopen(now=now)
            return True, None

        return await self._apply(
            intent_id, "operator", apply, log_event="intent.retried", reason=reason
        )

    async def force_expire(
        self, intent_id: UUID, reason: str | None = None, *, now: datetime | None = None
    ) -> TransitionResult:
        """Expire any intent that is not registered (operator action).

        Raises:
            InvalidStateError: Intent is registered
        """
        reason = reason or "Expired by operator"

        async def apply(uow: UnitOfWork, intent: PurchaseIntent):
            if intent.status == IntentStatus.REGISTERED:
                raise InvalidStateTransition("Cannot expire a registered intent.")
            if intent.status == IntentStatus.EXPIRED:
                return False, None
            intent.mark_expired(reason, now=now, force=True)
            return True, None

        return await self._apply(intent_id, "operator", apply, reason=reason)

    async def _get(self, intent_id: UUID) -> PurchaseIntent:
        async with await self.uow_factory() as uow:
            intent = await uow.intents.get_by_id(intent_id)
        if intent is None:
            raise IntentNotFoundError(
                f"Purchase intent {intent_id} not found", details={"intentId": str(intent_id)}
            )
        return intent

    async def _apply(
        self,
        intent_id: UUID,
        source: str,
        apply: Callable[[UnitOfWork, PurchaseIntent], Awaitable[tuple[bool, EnsDomain | None]]],
        *,
        log_event: str = "intent.transitioned",
        **log_fields: Any,
    ) -> TransitionResult:
        async with await self.uow_factory() as uow:
            intent = await uow.intents.get_for_update(intent_id)
            if intent is None:
                raise IntentNotFoundError(
                    f"Purchase intent {intent_id} not found",
                    details={"intentId": str(intent_id)},
                )
            previous = intent.status
            try:
                changed, domain = await apply(uow, intent)
            except InvalidStateTransition as e:
                raise InvalidStateError(
                    str(e),
                    details={"intentId": str(intent_id), "status": previous.value},
                ) from e
            if changed:
                await uow.intents.save(intent)

        if changed:
            logger.info(
                log_event,
                intent_id=str(intent_id),
                from_status=previous.value,
                to_status=intent.status.value,
                source=source,
                **log_fields,
            )
            if self.metrics is not None and previous != intent.status:
                self.metrics.record_transition(source, intent.status.value)

        return TransitionResult(
            intent=intent, previous_status=previous, changed=changed, domain=domain
        )

    async def _write_domain(
        self,
        uow: UnitOfWork,
        intent: PurchaseIntent,
        tx_hash: str,
        set_primary: bool,
        now: datetime,
    ) -> EnsDomain:
        domain = await uow.domains.get_by_name(intent.domain_name)
        if domain is None:
            domain = EnsDomain(
                user_id=intent.user_id,
                name=intent.domain_name,
                label=intent.label,
                tld=intent.tld,
                owner_address=intent.wallet_address,
                tx_hash=tx_hash,
                intent_id=intent.id,
                is_primary=set_primary,
                registered_at=now,
                updated_at=now,
            )
        else:
            # Name bought again after a previous registration lapsed.
            domain.user_id = intent.user_id
            domain.owner_address = intent.wallet_address
            domain.tx_hash = tx_hash
            domain.intent_id = intent.id
            domain.is_primary = set_primary
            domain.registered_at = now
            domain.updated_at = now
        await uow.domains.add(domain)
        if set_primary:
            await uow.domains.clear_primary(intent.user_id, domain.id, now)
        return domain

    @staticmethod
    def _normalize_tx_hash(tx_hash: str) -> str:
        try:
            return validate_tx_hash_format(tx_hash)
        except ValueError as e:
            raise PermanentError(str(e), code="INVALID_INPUT", status_code=400) from e
