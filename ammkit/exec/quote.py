"""Constant-product quote computation."""

import time
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from ..core.errors import (
    InsufficientLiquidity,
    InvalidParams,
    NoLiquidity,
    SlippageExceeded,
    StalePool,
)
from ..core.types import BPS_DENOMINATOR, U64_MAX, Pool, Quote, TradeParams
from ..pool.registry import PoolRegistry

logger = structlog.get_logger(__name__)


def apply_fee(amount_in: int, fee_bps: int) -> int:
    """Input amount remaining after the pool's trade fee."""
    return amount_in * (BPS_DENOMINATOR - fee_bps) // BPS_DENOMINATOR


def constant_product_output(amount_in_after_fee: int, reserve_in: int, reserve_out: int) -> int:
    """Output of an x*y=k swap, rounded in the pool's favour."""
    if reserve_in == 0 or reserve_out == 0 or amount_in_after_fee == 0:
        return 0
    k = reserve_in * reserve_out
    new_reserve_out = -(-k // (reserve_in + amount_in_after_fee))
    return reserve_out - new_reserve_out


def min_amount_out(amount_out: int, slippage_bps: int) -> int:
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def price_impact_pct(amount_in: int, amount_out: int, reserve_in: int, reserve_out: int) -> float:
    """Relative gap between the pre-trade spot price and the executed price, in percent."""
    if reserve_in == 0 or reserve_out == 0:
        return 100.0
    spot = reserve_out / reserve_in
    executed = amount_out / amount_in
    return abs(spot - executed) / spot * 100


def validate_params(params: TradeParams) -> None:
    """Reject malformed swap requests.

    Raises:
        InvalidParams: On a non-positive or out-of-range amount, slippage
            outside 0..10000 bps, or identical input and output mints
    """
    if params.amount_in <= 0:
        raise InvalidParams("amount_in must be positive", amount=params.amount_in)
    if params.amount_in > U64_MAX:
        raise InvalidParams("amount_in exceeds u64", amount=params.amount_in)
    if not 0 <= params.slippage_bps <= BPS_DENOMINATOR:
        raise InvalidParams(
            "slippage_bps must be within 0..10000", slippage_bps=params.slippage_bps
        )
    if params.input_mint == params.output_mint:
        raise InvalidParams("Input and output mints must differ", mint=params.input_mint)


class QuoteEngine:
    """Prices swaps against the best available pool."""

    def __init__(
        self,
        registry: PoolRegistry,
        pool_max_age_seconds: float = 30.0,
        quote_ttl_seconds: float = 5.0,
        max_price_impact_pct: float = 100.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the quote engine.

        Args:
            registry: Pool registry
            pool_max_age_seconds: Oldest pool snapshot accepted for quoting
            quote_ttl_seconds: How long a quote stays valid
            max_price_impact_pct: Quotes with a larger impact are rejected
            now_fn: Optional clock (for testing)
        """
        self.registry = registry
        self.pool_max_age_seconds = pool_max_age_seconds
        self.quote_ttl_seconds = quote_ttl_seconds
        self.max_price_impact_pct = max_price_impact_pct
        self._now_fn = now_fn or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._now_fn(), UTC)

    def is_fresh(self, pool: Pool) -> bool:
        if pool.fetched_at is None:
            return False
        age = self._now_fn() - pool.fetched_at.timestamp()
        return age <= self.pool_max_age_seconds

    def is_expired(self, quote: Quote) -> bool:
        return self._now_fn() - quote.generated_at.timestamp() > self.quote_ttl_seconds

    def quote_for_pool(self, params: TradeParams, pool: Pool) -> Quote:
        """Price ``params`` against a single pool snapshot.

        Raises:
            InvalidParams: If the request is malformed or the pool does not
                trade the requested pair
        """
        validate_params(params)
        if {params.input_mint, params.output_mint} != {pool.token_a_mint, pool.token_b_mint}:
            raise InvalidParams(
                "Pool does not trade the requested pair",
                pool=pool.address,
                input_mint=params.input_mint,
                output_mint=params.output_mint,
            )

        reserve_in = pool.reserve_of(params.input_mint)
        reserve_out = pool.reserve_of(params.output_mint)
        after_fee = apply_fee(params.amount_in, pool.trade_fee_bps)
        amount_out = constant_product_output(after_fee, reserve_in, reserve_out)

        return Quote(
            input_mint=params.input_mint,
            output_mint=params.output_mint,
            amount_in=params.amount_in,
            amount_out=amount_out,
            min_amount_out=min_amount_out(amount_out, params.slippage_bps),
            price_impact=price_impact_pct(params.amount_in, amount_out, reserve_in, reserve_out),
            fee_amount=params.amount_in - after_fee,
            pool_address=pool.address,
            slippage_bps=params.slippage_bps,
            generated_at=self._now(),
        )

    async def get_quote_with_validation(self, params: TradeParams) -> Quote:
        """Validate ``params`` and quote them against the best fresh pool.

        Returns:
            Quote from the pool yielding the highest output (ties broken by address)

        Raises:
            InvalidParams: If the request is malformed
            NoLiquidity: If no pool serves the pair
            StalePool: If every pool snapshot is too old
            InsufficientLiquidity: If the best output is zero
            SlippageExceeded: If the price impact exceeds the configured maximum
            TransportError: If the ledger is unreachable after retry
        """
        validate_params(params)

        pools = await self.registry.find_pools_by_tokens(params.input_mint, params.output_mint)
        if not pools:
            raise NoLiquidity(
                "No pool for pair",
                input_mint=params.input_mint,
                output_mint=params.output_mint,
            )

        fresh = [pool for pool in pools if self.is_fresh(pool)]
        if not fresh:
            raise StalePool(
                "All pool snapshots are stale",
                input_mint=params.input_mint,
                output_mint=params.output_mint,
                max_age=self.pool_max_age_seconds,
            )

        quotes = [self.quote_for_pool(params, pool) for pool in fresh]
        best = min(quotes, key=lambda q: (-q.amount_out, q.pool_address))

        if best.amount_out == 0:
            raise InsufficientLiquidity(
                "Reserves cannot support trade",
                input_mint=params.input_mint,
                output_mint=params.output_mint,
                amount=params.amount_in,
            )
        if best.price_impact > self.max_price_impact_pct:
            raise SlippageExceeded(
                "Price impact exceeds limit",
                pool=best.pool_address,
                amount=params.amount_in,
                price_impact=round(best.price_impact, 4),
                max_price_impact=self.max_price_impact_pct,
            )

        logger.info(
            "Quote computed",
            pool=best.pool_address,
            amount_in=best.amount_in,
            amount_out=best.amount_out,
            min_amount_out=best.min_amount_out,
            price_impact=round(best.price_impact, 4),
            candidates=len(fresh),
        )
        return best
