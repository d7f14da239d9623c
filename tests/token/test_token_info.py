"""Tests for token mint projection."""

import struct
from unittest.mock import AsyncMock

import pytest

from ammkit.core.errors import DecodeError, NotFound
from ammkit.core.types import TokenMetadata
from ammkit.token.info import TokenInfoService, decode_mint, decode_token_amount


def mint_account(supply: int, decimals: int) -> bytes:
    data = bytearray(82)
    struct.pack_into("<Q", data, 36, supply)
    data[44] = decimals
    data[45] = 1  # is_initialized
    return bytes(data)


def test_decode_mint():
    assert decode_mint("Mint", mint_account(1_000_000_000, 6)) == (1_000_000_000, 6)


def test_decode_short_account():
    with pytest.raises(DecodeError):
        decode_mint("Mint", b"\x00" * 40)


def test_decode_token_amount():
    data = bytearray(165)
    struct.pack_into("<Q", data, 64, 123_456)

    assert decode_token_amount("Account", bytes(data)) == 123_456


def test_decode_short_token_account():
    with pytest.raises(DecodeError):
        decode_token_amount("Account", b"\x00" * 82)


class TestTokenInfoService:
    """Test TokenInfoService functionality."""

    @pytest.mark.asyncio
    async def test_without_metadata_service(self, ledger, token_mint):
        ledger.put_account(token_mint, mint_account(5_000, 9))
        service = TokenInfoService(ledger, retry_wait=0)

        info = await service.get_token_info(token_mint)

        assert info.mint == token_mint
        assert info.supply == 5_000
        assert info.decimals == 9
        assert info.holder_count == 0
        assert info.metadata is None

    @pytest.mark.asyncio
    async def test_with_metadata(self, ledger, token_mint):
        ledger.put_account(token_mint, mint_account(5_000, 6))
        metadata_service = AsyncMock()
        metadata_service.get_metadata.return_value = TokenMetadata(name="Bonk", symbol="BONK")
        metadata_service.get_holder_count.return_value = 1234
        service = TokenInfoService(ledger, metadata_service=metadata_service, retry_wait=0)

        info = await service.get_token_info(token_mint)

        assert info.metadata.symbol == "BONK"
        assert info.holder_count == 1234
        metadata_service.get_metadata.assert_awaited_once_with(token_mint)

    @pytest.mark.asyncio
    async def test_metadata_failure_is_tolerated(self, ledger, token_mint):
        ledger.put_account(token_mint, mint_account(5_000, 6))
        metadata_service = AsyncMock()
        metadata_service.get_metadata.side_effect = RuntimeError("service down")
        metadata_service.get_holder_count.side_effect = RuntimeError("service down")
        service = TokenInfoService(ledger, metadata_service=metadata_service, retry_wait=0)

        info = await service.get_token_info(token_mint)

        assert info.supply == 5_000
        assert info.metadata is None
        assert info.holder_count == 0

    @pytest.mark.asyncio
    async def test_holder_count_failure_keeps_metadata(self, ledger, token_mint):
        ledger.put_account(token_mint, mint_account(5_000, 6))
        metadata_service = AsyncMock()
        metadata_service.get_metadata.return_value = TokenMetadata(name="Bonk", symbol="BONK")
        metadata_service.get_holder_count.side_effect = RuntimeError("rate limited")
        service = TokenInfoService(ledger, metadata_service=metadata_service, retry_wait=0)

        info = await service.get_token_info(token_mint)

        assert info.metadata.symbol == "BONK"
        assert info.holder_count == 0

    @pytest.mark.asyncio
    async def test_metadata_failure_keeps_holder_count(self, ledger, token_mint):
        ledger.put_account(token_mint, mint_account(5_000, 6))
        metadata_service = AsyncMock()
        metadata_service.get_metadata.side_effect = RuntimeError("service down")
        metadata_service.get_holder_count.return_value = 77
        service = TokenInfoService(ledger, metadata_service=metadata_service, retry_wait=0)

        info = await service.get_token_info(token_mint)

        assert info.metadata is None
        assert info.holder_count == 77

    @pytest.mark.asyncio
    async def test_missing_mint(self, ledger, token_mint):
        service = TokenInfoService(ledger, retry_wait=0)

        with pytest.raises(NotFound):
            await service.get_token_info(token_mint)

    @pytest.mark.asyncio
    async def test_non_mint_account(self, ledger, token_mint):
        ledger.put_account(token_mint, b"\x01" * 10)
        service = TokenInfoService(ledger, retry_wait=0)

        with pytest.raises(DecodeError):
            await service.get_token_info(token_mint)

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, ledger, token_mint):
        ledger.put_account(token_mint, mint_account(7, 0))
        ledger.read_failures = 1
        service = TokenInfoService(ledger, retry_wait=0)

        info = await service.get_token_info(token_mint)

        assert info.supply == 7
        assert ledger.read_calls == 2
