"""Core data types for the AMM engine."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

BPS_DENOMINATOR = 10_000
U64_MAX = 2**64 - 1


class Pool(BaseModel):
    """Immutable snapshot of a pool account."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(description="Pool account address")
    token_a_mint: str = Field(description="Mint of token A")
    token_b_mint: str = Field(description="Mint of token B")
    token_a_vault: str = Field(description="Reserve account holding token A")
    token_b_vault: str = Field(description="Reserve account holding token B")
    lp_mint: str = Field(description="LP token mint")
    fee_account: str = Field(description="Account receiving trade fees")
    token_a_decimals: int = Field(ge=0, le=255, description="Decimals of token A")
    token_b_decimals: int = Field(ge=0, le=255, description="Decimals of token B")
    token_a_reserve_amount: int = Field(ge=0, le=U64_MAX, description="Raw reserve A")
    token_b_reserve_amount: int = Field(ge=0, le=U64_MAX, description="Raw reserve B")
    lp_supply: int = Field(ge=0, le=U64_MAX, description="Raw LP supply")
    trade_fee_bps: int = Field(ge=0, lt=BPS_DENOMINATOR, description="Trade fee in bps")
    fetched_at: datetime | None = Field(
        default=None, description="When the snapshot was read from the ledger"
    )

    def has_mint(self, mint: str) -> bool:
        return mint in (self.token_a_mint, self.token_b_mint)

    def other_mint(self, mint: str) -> str:
        """Return the mint on the opposite side of ``mint``."""
        if mint == self.token_a_mint:
            return self.token_b_mint
        if mint == self.token_b_mint:
            return self.token_a_mint
        raise ValueError(f"Mint {mint} is not part of pool {self.address}")

    def reserve_of(self, mint: str) -> int:
        if mint == self.token_a_mint:
            return self.token_a_reserve_amount
        if mint == self.token_b_mint:
            return self.token_b_reserve_amount
        raise ValueError(f"Mint {mint} is not part of pool {self.address}")

    def decimals_of(self, mint: str) -> int:
        if mint == self.token_a_mint:
            return self.token_a_decimals
        if mint == self.token_b_mint:
            return self.token_b_decimals
        raise ValueError(f"Mint {mint} is not part of pool {self.address}")

    @property
    def has_liquidity(self) -> bool:
        return self.token_a_reserve_amount > 0 and self.token_b_reserve_amount > 0


class ScanResult(BaseModel):
    """Outcome of a bounded pool-program scan."""

    model_config = ConfigDict(frozen=True)

    scanned: int = Field(description="Candidate accounts examined")
    matched: int = Field(description="Accounts decoded as pools")
    skipped: int = Field(default=0, description="Accounts that failed to decode")
    truncated: bool = Field(
        default=False, description="Whether the candidate set hit the scan cap"
    )
    pools: tuple[Pool, ...] = Field(default=(), description="Decoded pools")

    @property
    def partial(self) -> bool:
        return self.truncated


class AccountFilter(BaseModel):
    """Filter for scanning accounts owned by a program."""

    model_config = ConfigDict(frozen=True)

    program_id: str = Field(description="Owning program")
    data_size: int | None = Field(default=None, description="Exact account size")
    memcmp: tuple[tuple[int, str], ...] = Field(
        default=(), description="(offset, base58 bytes) pairs, all must match"
    )


class TokenMetadata(BaseModel):
    """Token metadata from the metadata service."""

    name: str
    symbol: str
    uri: str = ""


class TokenInfo(BaseModel):
    """Read-only projection of a token mint."""

    mint: str = Field(description="Token mint address")
    decimals: int = Field(description="Mint decimals")
    supply: int = Field(description="Raw token supply")
    holder_count: int = Field(default=0, description="Number of holders")
    metadata: TokenMetadata | None = Field(default=None, description="Name/symbol")


class Price(BaseModel):
    """Token price in the native asset and in USD."""

    model_config = ConfigDict(frozen=True)

    mint: str = Field(description="Token mint address")
    sol_price: float = Field(description="Price denominated in SOL")
    usd_price: float = Field(description="Price denominated in USD")
    liquidity: float = Field(description="Reserve value (SOL) backing the price")
    timestamp: datetime = Field(description="Computation time")
    pool_count: int = Field(default=1, description="Pools contributing to the price")
    low_confidence: bool = Field(
        default=False, description="Liquidity below the configured threshold"
    )


class TimeFrame(str, Enum):
    """Candle bucket widths."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def seconds(self) -> int:
        return _TIMEFRAME_SECONDS[self]

    def __str__(self) -> str:
        return self.value


_TIMEFRAME_SECONDS = {
    TimeFrame.M1: 60,
    TimeFrame.M5: 300,
    TimeFrame.M15: 900,
    TimeFrame.H1: 3600,
    TimeFrame.H4: 14400,
    TimeFrame.D1: 86400,
}


class PriceSample(BaseModel):
    """A single price observation."""

    model_config = ConfigDict(frozen=True)

    mint: str
    price: float = Field(gt=0, description="Price in SOL")
    volume: float = Field(default=0.0, ge=0, description="Traded volume in SOL")
    timestamp: datetime


class Candle(BaseModel):
    """OHLCV bucket."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(description="Bucket start")
    open: float
    high: float
    low: float
    close: float
    volume: float
    time_frame: TimeFrame


class TradeParams(BaseModel):
    """Swap request. Validated by the quote engine, not on construction."""

    model_config = ConfigDict(frozen=True)

    input_mint: str = Field(description="Mint sold")
    output_mint: str = Field(description="Mint bought")
    amount_in: int = Field(description="Raw input amount")
    slippage_bps: int = Field(description="Tolerated slippage in bps")
    user: str = Field(description="Trader public key")


class Quote(BaseModel):
    """Priced swap against a single pool."""

    model_config = ConfigDict(frozen=True)

    input_mint: str
    output_mint: str
    amount_in: int
    amount_out: int = Field(description="Expected raw output")
    min_amount_out: int = Field(description="Output floor after slippage")
    price_impact: float = Field(description="Price impact in percent")
    fee_amount: int = Field(description="Raw input amount taken as fee")
    pool_address: str
    slippage_bps: int
    generated_at: datetime


class TxState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionStatus(BaseModel):
    """Ledger view of a submitted transaction."""

    state: TxState
    reason: str | None = Field(default=None, description="Failure reason")
    slot: int | None = None


class SwapSimulation(BaseModel):
    """Result of executing a signed swap against current ledger state without landing it."""

    success: bool
    reason: str | None = Field(default=None, description="Failure reason with program logs")
    logs: list[str] = Field(default_factory=list, description="Program log lines")
    units_consumed: int = Field(default=0, description="Compute units used")


class TradeState(str, Enum):
    QUOTED = "quoted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
