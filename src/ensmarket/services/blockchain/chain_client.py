"""Read-only chain access for ENS commit/register transaction receipts."""

import asyncio
from enum import Enum

import structlog
from web3 import Web3
from web3.exceptions import TransactionNotFound

from ensmarket.services.exceptions import ChainUnavailableError

logger = structlog.get_logger()


class TxStatus(str, Enum):
    """Observed state of a transaction on chain."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


class ChainClient:
    """Receipt lookups over a JSON-RPC endpoint.

    web3's HTTP provider is synchronous; every call runs in a worker thread so the
    event loop keeps serving webhooks while the watcher polls.
    """

    def __init__(self, w3: Web3, min_confirmations: int = 1):
        """Initialize chain client.

        Args:
            w3: Web3 instance bound to the marketplace chain
            min_confirmations: Blocks (including the receipt's own) required before
                a successful receipt counts as confirmed
        """
        self.w3 = w3
        self.min_confirmations = min_confirmations

    @classmethod
    def from_rpc_url(cls, rpc_url: str, min_confirmations: int = 1) -> "ChainClient":
        return cls(Web3(Web3.HTTPProvider(rpc_url)), min_confirmations=min_confirmations)

    async def get_transaction_status(self, tx_hash: str) -> TxStatus:
        """Resolve a transaction hash to confirmed / failed / pending.

        Args:
            tx_hash: Transaction hash (0x + 64 hex)

        Returns:
            TxStatus.PENDING when no receipt exists yet or confirmations are short

        Raises:
            ChainUnavailableError: RPC call failed
        """
        return await asyncio.to_thread(self._get_transaction_status, tx_hash)

    def _get_transaction_status(self, tx_hash: str) -> TxStatus:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)  # type: ignore[arg-type]
        except TransactionNotFound:
            return TxStatus.PENDING
        except Exception as e:
            logger.warning("chain.receipt_lookup_failed", tx_hash=tx_hash, error=str(e))
            raise ChainUnavailableError(
                f"Receipt lookup failed for {tx_hash}: {e}", details={"txHash": tx_hash}
            ) from e

        if receipt is None:
            return TxStatus.PENDING

        if receipt["status"] == 0:
            return TxStatus.FAILED

        if self.min_confirmations > 1:
            try:
                latest_block = self.w3.eth.block_number
            except Exception as e:
                raise ChainUnavailableError(f"Block number lookup failed: {e}") from e
            confirmations = latest_block - receipt["blockNumber"] + 1
            if confirmations < self.min_confirmations:
                logger.debug(
                    "chain.awaiting_confirmations",
                    tx_hash=tx_hash,
                    confirmations=confirmations,
                    required=self.min_confirmations,
                )
                return TxStatus.PENDING

        return TxStatus.CONFIRMED
