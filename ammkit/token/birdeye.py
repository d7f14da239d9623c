"""Birdeye-backed token metadata service."""

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.types import TokenMetadata
from ..pool.cache import TTLCache

logger = structlog.get_logger(__name__)


class TokenBucket:
    """Token bucket pacing requests to the metadata API."""

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize token bucket.

        Args:
            capacity: Maximum requests allowed in a burst
            refill_rate: Requests regained per second
            now_fn: Optional monotonic clock (for testing)
        """
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._now_fn = now_fn or time.monotonic
        self.tokens = float(capacity)
        self.last_refill = self._now_fn()

    def _refill(self) -> None:
        now = self._now_fn()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now

    def try_acquire(self) -> bool:
        """Take a token if one is available."""
        self._refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def wait_time(self) -> float:
        """Seconds until the next token is available."""
        self._refill()
        return max(0.0, (1 - self.tokens) / self.refill_rate)

    async def acquire(self) -> None:
        """Wait until a token can be taken."""
        while not self.try_acquire():
            await asyncio.sleep(self.wait_time())


class BirdeyeMetadataService:
    """Token name, symbol and holder count from the Birdeye token overview."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        session: httpx.AsyncClient | None = None,
        overview_ttl_seconds: float = 60.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            base_url: Birdeye API base URL
            api_key: Optional API key
            session: Optional httpx client session
            overview_ttl_seconds: How long a fetched overview is reused
            now_fn: Optional clock for the rate limiter and overview cache (for testing)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or httpx.AsyncClient()
        self.rate_limiter = TokenBucket(capacity=60, refill_rate=1.0, now_fn=now_fn)
        self._overviews = TTLCache(maxsize=1_000, ttl=overview_ttl_seconds, now_fn=now_fn)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
            reraise=True,
        )

    async def _get(
        self, url: str, params: dict[str, Any], headers: dict[str, str]
    ) -> dict[str, Any]:
        try:
            response = await self.session.get(url, params=params, headers=headers, timeout=30.0)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "HTTP error in Birdeye request",
                url=url,
                status_code=e.response.status_code,
            )
            raise
        except (httpx.NetworkError, httpx.TimeoutException) as e:
            logger.warning("Network error in Birdeye request", url=url, error=str(e))
            raise
        return response.json()

    async def _make_request(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        """Make HTTP request with rate limiting and retries.

        Raises:
            httpx.HTTPError: On HTTP errors
        """
        await self.rate_limiter.acquire()

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"x-chain": "solana"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key

        return await self._retrying()(self._get, url, params, headers)

    async def _overview(self, mint: str) -> dict[str, Any]:
        cached = self._overviews.get(mint)
        if cached is not None:
            return cached
        payload = await self._make_request("defi/token_overview", {"address": mint})
        data = payload.get("data") or {}
        self._overviews.set(mint, data)
        return data

    async def get_metadata(self, mint: str) -> TokenMetadata | None:
        data = await self._overview(mint)
        if not data.get("symbol"):
            return None
        return TokenMetadata(
            name=data.get("name") or data["symbol"],
            symbol=data["symbol"],
            uri=data.get("logoURI") or "",
        )

    async def get_holder_count(self, mint: str) -> int:
        data = await self._overview(mint)
        return int(data.get("holder") or 0)

    async def aclose(self) -> None:
        await self.session.aclose()
