"""Tests for the Birdeye metadata service."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from ammkit.token.birdeye import BirdeyeMetadataService, TokenBucket

BASE_URL = "https://public-api.birdeye.so"
MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


@pytest.fixture
def sample_overview():
    """Sample Birdeye token overview response."""
    return {
        "success": True,
        "data": {
            "address": MINT,
            "name": "Bonk",
            "symbol": "BONK",
            "logoURI": "https://example.org/bonk.png",
            "holder": 812345,
            "price": 0.00002,
        },
    }


@pytest.fixture
def service():
    return BirdeyeMetadataService(base_url=BASE_URL + "/", api_key="test_key")


class TestBirdeyeMetadataService:
    """Test BirdeyeMetadataService functionality."""

    def test_initialization(self, service):
        assert service.base_url == BASE_URL
        assert service.api_key == "test_key"

    @pytest.mark.asyncio
    @respx.mock
    async def test_metadata_and_holders(self, service, sample_overview):
        route = respx.get(f"{BASE_URL}/defi/token_overview").mock(
            return_value=httpx.Response(200, json=sample_overview)
        )

        metadata = await service.get_metadata(MINT)
        holders = await service.get_holder_count(MINT)

        assert metadata.name == "Bonk"
        assert metadata.symbol == "BONK"
        assert metadata.uri == "https://example.org/bonk.png"
        assert holders == 812345
        assert route.call_count == 1

        request = respx.calls.last.request
        assert request.url.params["address"] == MINT
        assert request.headers["X-API-KEY"] == "test_key"
        assert request.headers["x-chain"] == "solana"

    @pytest.mark.asyncio
    @respx.mock
    async def test_unknown_token(self, service):
        respx.get(f"{BASE_URL}/defi/token_overview").mock(
            return_value=httpx.Response(200, json={"success": True, "data": {}})
        )

        assert await service.get_metadata(MINT) is None
        assert await service.get_holder_count(MINT) == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_propagates(self, service):
        respx.get(f"{BASE_URL}/defi/token_overview").mock(
            return_value=httpx.Response(401, json={"message": "Unauthorized"})
        )

        with pytest.raises(httpx.HTTPStatusError):
            await service.get_metadata(MINT)

    @pytest.mark.asyncio
    async def test_aclose(self, service):
        await service.aclose()

        assert service.session.is_closed


    @pytest.mark.asyncio
    @respx.mock
    async def test_overview_cache_expires(self, clock, sample_overview):
        service = BirdeyeMetadataService(base_url=BASE_URL, overview_ttl_seconds=60, now_fn=clock)
        route = respx.get(f"{BASE_URL}/defi/token_overview").mock(
            return_value=httpx.Response(200, json=sample_overview)
        )

        await service.get_metadata(MINT)
        clock.advance(30)
        await service.get_metadata(MINT)
        assert route.call_count == 1

        clock.advance(31)
        await service.get_metadata(MINT)
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error_retried(self, service, sample_overview):
        route = respx.get(f"{BASE_URL}/defi/token_overview").mock(
            side_effect=[
                httpx.ConnectError("connection refused"),
                httpx.Response(200, json=sample_overview),
            ]
        )

        with patch("asyncio.sleep", new=AsyncMock()):
            metadata = await service.get_metadata(MINT)

        assert metadata.symbol == "BONK"
        assert route.call_count == 2


class TestTokenBucket:
    """Test the rate limiter."""

    def test_burst_then_refill(self, clock):
        bucket = TokenBucket(capacity=2, refill_rate=1.0, now_fn=clock)

        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()
        assert bucket.wait_time() == pytest.approx(1.0)

        clock.advance(0.5)
        assert not bucket.try_acquire()
        clock.advance(0.5)
        assert bucket.try_acquire()

    def test_refill_capped_at_capacity(self, clock):
        bucket = TokenBucket(capacity=2, refill_rate=1.0, now_fn=clock)
        bucket.try_acquire()

        clock.advance(100)

        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()

    def test_refill_rate_must_be_positive(self):
        with pytest.raises(ValueError):
            TokenBucket(capacity=2, refill_rate=0.0)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self):
        bucket = TokenBucket(capacity=1, refill_rate=100.0)

        await bucket.acquire()
        await asyncio.wait_for(bucket.acquire(), timeout=1.0)

        assert bucket.tokens < 1
