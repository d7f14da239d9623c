"""Token mint projection."""

import struct

import structlog

from ..core.errors import DecodeError, NotFound
from ..core.interfaces import LedgerGateway, TokenMetadataService
from ..core.types import TokenInfo, TokenMetadata
from ..ledger.calls import call_ledger

logger = structlog.get_logger(__name__)

MINT_SUPPLY_OFFSET = 36
MINT_DECIMALS_OFFSET = 44
MINT_ACCOUNT_MIN_SIZE = 82
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64
TOKEN_ACCOUNT_MIN_SIZE = 165


def decode_mint(mint: str, data: bytes) -> tuple[int, int]:
    """Extract (supply, decimals) from SPL mint account bytes.

    Raises:
        DecodeError: If the data is too short to be a mint account
    """
    if len(data) < MINT_ACCOUNT_MIN_SIZE:
        raise DecodeError(
            "Mint account too short", mint=mint, size=len(data), expected=MINT_ACCOUNT_MIN_SIZE
        )
    (supply,) = struct.unpack_from("<Q", data, MINT_SUPPLY_OFFSET)
    return supply, data[MINT_DECIMALS_OFFSET]


def decode_token_amount(address: str, data: bytes) -> int:
    """Extract the balance from SPL token account bytes.

    Raises:
        DecodeError: If the data is too short to be a token account
    """
    if len(data) < TOKEN_ACCOUNT_MIN_SIZE:
        raise DecodeError(
            "Token account too short",
            address=address,
            size=len(data),
            expected=TOKEN_ACCOUNT_MIN_SIZE,
        )
    (amount,) = struct.unpack_from("<Q", data, TOKEN_ACCOUNT_AMOUNT_OFFSET)
    return amount


class TokenInfoService:
    """Builds ``TokenInfo`` from the mint account and an optional metadata service."""

    def __init__(
        self,
        gateway: LedgerGateway,
        metadata_service: TokenMetadataService | None = None,
        ledger_timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
    ) -> None:
        self.gateway = gateway
        self.metadata_service = metadata_service
        self.ledger_timeout_seconds = ledger_timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait

    async def get_token_info(self, mint: str) -> TokenInfo:
        """Read supply and decimals of ``mint`` and attach holder count and metadata.

        Metadata lookups are independent: a failed metadata lookup is logged
        and leaves ``metadata`` unset, a failed holder count leaves
        ``holder_count`` at 0.

        Raises:
            NotFound: If the mint account does not exist
            DecodeError: If the account is not a mint
            TransportError: If the ledger is unreachable after retry
        """
        data = await call_ledger(
            lambda: self.gateway.read_account(mint),
            op="read_account",
            timeout=self.ledger_timeout_seconds,
            attempts=self.retry_attempts,
            wait=self.retry_wait,
            mint=mint,
        )
        if data is None:
            raise NotFound("Mint account not found", mint=mint)
        supply, decimals = decode_mint(mint, data)

        holder_count = 0
        metadata: TokenMetadata | None = None
        if self.metadata_service is not None:
            try:
                metadata = await self.metadata_service.get_metadata(mint)
            except Exception as e:
                logger.warning("Token metadata lookup failed", mint=mint, error=str(e))
            try:
                holder_count = await self.metadata_service.get_holder_count(mint)
            except Exception as e:
                logger.warning("Holder count lookup failed", mint=mint, error=str(e))

        return TokenInfo(
            mint=mint,
            decimals=decimals,
            supply=supply,
            holder_count=holder_count,
            metadata=metadata,
        )
