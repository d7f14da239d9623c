"""Pool-reserve price derivation.

Prices are denominated in the quote asset (wrapped SOL by default) and
converted to USD through the quote/USD pools.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from ..core.errors import InsufficientHistory, InvalidParams, NoLiquidity
from ..core.types import (
    USDC_MINT,
    WSOL_MINT,
    Candle,
    Pool,
    Price,
    PriceSample,
    TimeFrame,
)
from ..pool.registry import PoolRegistry
from .history import PriceHistory, build_candles

logger = structlog.get_logger(__name__)


def pool_price(pool: Pool, mint: str, quote_mint: str) -> float:
    """Spot price of ``mint`` in ``quote_mint`` units, adjusted for decimals."""
    base = pool.reserve_of(mint) / 10 ** pool.decimals_of(mint)
    quote = pool.reserve_of(quote_mint) / 10 ** pool.decimals_of(quote_mint)
    return quote / base


def pool_liquidity(pool: Pool, quote_mint: str) -> float:
    """Value of both reserves in quote-asset units."""
    return 2 * pool.reserve_of(quote_mint) / 10 ** pool.decimals_of(quote_mint)


def weighted_median(candidates: list[tuple[float, float]]) -> float:
    """Lowest price at which half of the total liquidity is reached."""
    ordered = sorted(candidates)
    half = sum(liquidity for _, liquidity in ordered) / 2
    cumulative = 0.0
    for price, liquidity in ordered:
        cumulative += liquidity
        if cumulative >= half:
            return price
    return ordered[-1][0]


def filter_outliers(
    candidates: list[tuple[float, float]], tolerance: float
) -> list[tuple[float, float]]:
    """Drop (price, liquidity) pairs deviating from the weighted median by more than ``tolerance``.

    The median is itself a candidate, so the result is never empty for a
    non-empty input. Thin pools cannot move the median away from deep ones.
    """
    if not candidates:
        return []
    median = weighted_median(candidates)
    return [
        (price, liquidity)
        for price, liquidity in candidates
        if abs(price - median) <= tolerance * median
    ]


def weighted_price(candidates: list[tuple[float, float]]) -> float:
    """Liquidity-weighted average price."""
    if len(candidates) == 1:
        return candidates[0][0]
    total = sum(liquidity for _, liquidity in candidates)
    return sum(price * liquidity for price, liquidity in candidates) / total


class PriceAggregator:
    """Derives current and manipulation-resistant prices from pool reserves."""

    def __init__(
        self,
        registry: PoolRegistry,
        quote_mint: str = WSOL_MINT,
        usd_mint: str = USDC_MINT,
        min_liquidity: float = 5.0,
        outlier_tolerance: float = 0.10,
        fallback_sol_usd_price: float = 100.0,
        history: PriceHistory | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            registry: Pool registry
            quote_mint: Mint prices are denominated in
            usd_mint: Stablecoin mint used for USD conversion
            min_liquidity: Minimum pool liquidity (quote units) for secure pricing
            outlier_tolerance: Maximum relative deviation from the median price
            fallback_sol_usd_price: USD price of the quote asset when no USD pool exists
            history: Sample store for candles (a private one if omitted)
            now_fn: Optional clock (for testing)
        """
        self.registry = registry
        self.quote_mint = quote_mint
        self.usd_mint = usd_mint
        self.min_liquidity = min_liquidity
        self.outlier_tolerance = outlier_tolerance
        self.fallback_sol_usd_price = fallback_sol_usd_price
        self.history = history if history is not None else PriceHistory()
        self._now_fn = now_fn or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._now_fn(), UTC)

    async def _priced_pools(self, mint: str) -> list[tuple[Pool, float, float]]:
        """(pool, price, liquidity) for every pool of ``mint`` with positive reserves."""
        if mint == self.quote_mint:
            pools = await self.registry.find_pools_by_tokens(self.quote_mint, self.usd_mint)
            return [
                (pool, 1.0, pool_liquidity(pool, self.quote_mint))
                for pool in sorted(pools, key=lambda p: p.address)
                if pool.has_liquidity
            ]

        pools = await self.registry.find_pools_by_tokens(mint, self.quote_mint)
        return [
            (pool, pool_price(pool, mint, self.quote_mint), pool_liquidity(pool, self.quote_mint))
            for pool in sorted(pools, key=lambda p: p.address)
            if pool.has_liquidity
        ]

    async def get_sol_usd_price(self) -> float:
        """USD price of the quote asset from its stablecoin pools.

        Falls back to the configured price when no such pool has liquidity.
        """
        pools = await self.registry.find_pools_by_tokens(self.quote_mint, self.usd_mint)
        candidates = [
            (
                pool_price(pool, self.quote_mint, self.usd_mint),
                pool_liquidity(pool, self.quote_mint),
            )
            for pool in pools
            if pool.has_liquidity
        ]
        if not candidates:
            logger.warning(
                "No USD pool available, using fallback price",
                fallback=self.fallback_sol_usd_price,
            )
            return self.fallback_sol_usd_price

        secure = [c for c in candidates if c[1] >= self.min_liquidity] or candidates
        return weighted_price(filter_outliers(secure, self.outlier_tolerance))

    async def get_current_price(self, mint: str) -> Price:
        """Price from the single deepest pool of ``mint`` against the quote asset.

        Raises:
            NoLiquidity: If no pool with positive reserves exists
            TransportError: If the ledger is unreachable after retry
        """
        priced = await self._priced_pools(mint)
        if not priced:
            raise NoLiquidity("No pool with liquidity", mint=mint)

        pool, price, liquidity = max(priced, key=lambda item: item[2])
        usd = await self.get_sol_usd_price()
        logger.debug("Current price", mint=mint, pool=pool.address, price=price)
        return Price(
            mint=mint,
            sol_price=price,
            usd_price=price * usd,
            liquidity=liquidity,
            timestamp=self._now(),
            pool_count=1,
            low_confidence=liquidity < self.min_liquidity,
        )

    async def get_secure_price(self, mint: str) -> Price:
        """Liquidity-weighted price across all adequately deep pools of ``mint``.

        Pools below ``min_liquidity`` are dropped, then pools deviating from
        the liquidity-weighted median by more than ``outlier_tolerance``. When nothing
        qualifies, the deepest pool's price is returned flagged
        ``low_confidence``.

        Raises:
            NoLiquidity: If no pool with positive reserves exists
            TransportError: If the ledger is unreachable after retry
        """
        priced = await self._priced_pools(mint)
        if not priced:
            raise NoLiquidity("No pool with liquidity", mint=mint)

        deep = [
            (price, liquidity)
            for _, price, liquidity in priced
            if liquidity >= self.min_liquidity
        ]
        if not deep:
            logger.warning(
                "No pool meets liquidity threshold",
                mint=mint,
                pools=len(priced),
                min_liquidity=self.min_liquidity,
            )
            price = await self.get_current_price(mint)
            self._record(price)
            return price

        survivors = filter_outliers(deep, self.outlier_tolerance)
        if len(survivors) < len(deep):
            logger.info(
                "Excluded outlier pools",
                mint=mint,
                excluded=len(deep) - len(survivors),
            )

        sol_price = weighted_price(survivors)
        usd = await self.get_sol_usd_price()
        price = Price(
            mint=mint,
            sol_price=sol_price,
            usd_price=sol_price * usd,
            liquidity=sum(liquidity for _, liquidity in survivors),
            timestamp=self._now(),
            pool_count=len(survivors),
            low_confidence=False,
        )
        self._record(price)
        logger.debug("Secure price", mint=mint, price=sol_price, pools=len(survivors))
        return price

    def _record(self, price: Price) -> None:
        if price.sol_price > 0:
            self.history.record(
                PriceSample(mint=price.mint, price=price.sol_price, timestamp=price.timestamp)
            )

    async def get_historical_prices(
        self, mint: str, timeframe: TimeFrame, limit: int
    ) -> list[Candle]:
        """Candles built from recorded samples of ``mint``.

        Raises:
            InvalidParams: If ``limit`` is below 1
            InsufficientHistory: If no samples have been recorded for the mint
        """
        if limit < 1:
            raise InvalidParams("Candle limit must be positive", limit=limit)
        samples = self.history.samples(mint)
        if not samples:
            raise InsufficientHistory("No price history", mint=mint)
        return build_candles(samples, timeframe, limit)

