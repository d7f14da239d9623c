"""Core interfaces for the AMM engine."""

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from .types import AccountFilter, SwapSimulation, TokenMetadata, TransactionStatus


@runtime_checkable
class LedgerGateway(Protocol):
    """Ledger access protocol.

    Implementations raise ``TransportError`` when the ledger is unreachable
    and ``TransactionFailed`` when a submitted transaction is rejected.
    """

    async def read_account(self, address: str) -> bytes | None:
        """Return raw account data, or None if the account does not exist."""
        ...

    async def scan_accounts(self, account_filter: AccountFilter) -> set[tuple[str, bytes]]:
        """Return (address, data) pairs of program accounts matching the filter."""
        ...

    def subscribe_account(self, address: str) -> AsyncIterator[bytes]:
        """Stream account data on every change."""
        ...

    async def submit_transaction(self, signed_tx: bytes) -> str:
        """Submit a signed transaction and return its signature."""
        ...

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        """Look up a submitted transaction."""
        ...

    async def simulate_transaction(self, signed_tx: bytes) -> SwapSimulation:
        """Execute a signed transaction against current state without landing it."""
        ...

    async def get_latest_blockhash(self) -> str:
        """Return a recent blockhash for transaction building."""
        ...


class TokenMetadataService(Protocol):
    """Token metadata lookup protocol."""

    async def get_metadata(self, mint: str) -> TokenMetadata | None:
        """Look up name and symbol for a mint."""
        ...

    async def get_holder_count(self, mint: str) -> int:
        """Count holders of a mint."""
        ...
