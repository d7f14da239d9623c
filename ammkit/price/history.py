"""Bounded per-mint price sample store and candle bucketing."""

from collections import deque
from datetime import UTC, datetime

from ..core.types import Candle, PriceSample, TimeFrame


class PriceHistory:
    """Keeps the most recent price samples of each mint."""

    def __init__(self, max_samples: int = 1000) -> None:
        if max_samples < 1:
            raise ValueError("max_samples must be positive")
        self.max_samples = max_samples
        self._samples: dict[str, deque[PriceSample]] = {}

    def record(self, sample: PriceSample) -> None:
        buffer = self._samples.get(sample.mint)
        if buffer is None:
            buffer = deque(maxlen=self.max_samples)
            self._samples[sample.mint] = buffer
        buffer.append(sample)

    def samples(self, mint: str) -> list[PriceSample]:
        """Samples of ``mint`` in insertion order."""
        return list(self._samples.get(mint, ()))

    def clear(self, mint: str | None = None) -> None:
        if mint is None:
            self._samples.clear()
        else:
            self._samples.pop(mint, None)

    def __contains__(self, mint: str) -> bool:
        return bool(self._samples.get(mint))


def bucket_start(timestamp: datetime, timeframe: TimeFrame) -> datetime:
    """Start of the epoch-aligned bucket containing ``timestamp``."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    seconds = int(timestamp.timestamp())
    return datetime.fromtimestamp(seconds - seconds % timeframe.seconds, UTC)


def build_candles(
    samples: list[PriceSample], timeframe: TimeFrame, limit: int
) -> list[Candle]:
    """Aggregate samples into OHLCV candles.

    Buckets without samples are omitted rather than filled.

    Args:
        samples: Price samples of a single mint
        timeframe: Bucket width
        limit: Maximum number of candles to return

    Returns:
        The most recent ``limit`` candles, oldest first
    """
    buckets: dict[datetime, list[PriceSample]] = {}
    for sample in sorted(samples, key=lambda s: s.timestamp):
        buckets.setdefault(bucket_start(sample.timestamp, timeframe), []).append(sample)

    candles = []
    for start in sorted(buckets)[-limit:]:
        bucket = buckets[start]
        prices = [s.price for s in bucket]
        candles.append(
            Candle(
                timestamp=start,
                open=prices[0],
                high=max(prices),
                low=min(prices),
                close=prices[-1],
                volume=sum(s.volume for s in bucket),
                time_frame=timeframe,
            )
        )
    return candles
