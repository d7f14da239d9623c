"""Pool discovery and snapshot cache."""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from ..core.errors import DecodeError, InvalidParams, NotFound
from ..core.interfaces import LedgerGateway
from ..core.types import AccountFilter, Pool, ScanResult
from ..ledger.calls import call_ledger
from .cache import TTLCache
from .layout import (
    POOL_ACCOUNT_SIZE,
    TOKEN_A_MINT_OFFSET,
    TOKEN_B_MINT_OFFSET,
    decode_pool,
)

logger = structlog.get_logger(__name__)


class PoolRegistry:
    """Discovers pool accounts of the AMM program and caches their snapshots."""

    def __init__(
        self,
        gateway: LedgerGateway,
        program_id: str,
        max_scan_accounts: int = 5000,
        snapshot_ttl_seconds: float = 10.0,
        pool_cache_ttl_seconds: float = 300.0,
        ledger_timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            gateway: Ledger gateway
            program_id: AMM program owning the pool accounts
            max_scan_accounts: Cap on candidate accounts examined per scan
            snapshot_ttl_seconds: Lifetime of cached pool snapshots
            pool_cache_ttl_seconds: Lifetime of cached scan results
            ledger_timeout_seconds: Timeout applied to each ledger call
            retry_attempts: Attempts per ledger call on transport failure
            retry_wait: Backoff multiplier between attempts
            now_fn: Optional clock (for testing)
        """
        self.gateway = gateway
        self.program_id = program_id
        self.max_scan_accounts = max_scan_accounts
        self.ledger_timeout_seconds = ledger_timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self._now_fn = now_fn or time.time

        self._pools = TTLCache(maxsize=10_000, ttl=snapshot_ttl_seconds, now_fn=self._now_fn)
        self._scans = TTLCache(maxsize=1_000, ttl=pool_cache_ttl_seconds, now_fn=self._now_fn)
        self.last_scan: ScanResult | None = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._now_fn(), UTC)

    # -------------------------
    # Snapshot cache
    # -------------------------
    def ingest(self, address: str, data: bytes) -> Pool:
        """Decode account bytes received out of band and cache the snapshot."""
        pool = decode_pool(address, data, fetched_at=self._now())
        self._pools.set(address, pool)
        return pool

    def invalidate(self, address: str | None = None) -> None:
        """Drop one cached snapshot, or every cached snapshot and scan."""
        if address is None:
            self._pools.clear()
            self._scans.clear()
        else:
            self._pools.delete(address)

    # -------------------------
    # Public interface
    # -------------------------
    async def get_pool_info(self, address: str, refresh: bool = False) -> Pool:
        """Fetch and decode a single pool account.

        Raises:
            NotFound: If the address does not reference a pool account
            DecodeError: If the account layout does not match
            TransportError: If the ledger is unreachable after retry
        """
        if not refresh:
            cached = self._pools.get(address)
            if cached is not None:
                return cached

        data = await call_ledger(
            lambda: self.gateway.read_account(address),
            op="read_account",
            timeout=self.ledger_timeout_seconds,
            attempts=self.retry_attempts,
            wait=self.retry_wait,
            address=address,
        )
        if data is None:
            raise NotFound("Pool account not found", address=address)

        pool = self.ingest(address, data)
        logger.debug(
            "Loaded pool",
            address=address,
            reserve_a=pool.token_a_reserve_amount,
            reserve_b=pool.token_b_reserve_amount,
        )
        return pool

    async def scan_pools(
        self, memcmp: tuple[tuple[int, str], ...], refresh: bool = False
    ) -> ScanResult:
        """Scan the pool program for accounts matching ``memcmp``.

        The candidate set is capped at ``max_scan_accounts`` (ordered by
        address); a capped scan is reported as truncated.
        """
        if not refresh:
            cached = self._scans.get(memcmp)
            if cached is not None:
                return await self._rehydrate(cached)

        account_filter = AccountFilter(
            program_id=self.program_id,
            data_size=POOL_ACCOUNT_SIZE,
            memcmp=memcmp,
        )
        accounts = await call_ledger(
            lambda: self.gateway.scan_accounts(account_filter),
            op="scan_accounts",
            timeout=self.ledger_timeout_seconds,
            attempts=self.retry_attempts,
            wait=self.retry_wait,
        )

        candidates = sorted(accounts)
        truncated = len(candidates) > self.max_scan_accounts
        if truncated:
            logger.warning(
                "Pool scan truncated",
                available=len(candidates),
                cap=self.max_scan_accounts,
                memcmp=memcmp,
            )
            candidates = candidates[: self.max_scan_accounts]

        pools: list[Pool] = []
        skipped = 0
        for address, data in candidates:
            try:
                pools.append(self.ingest(address, data))
            except (NotFound, DecodeError) as e:
                skipped += 1
                logger.warning("Skipping undecodable pool account", address=address, error=str(e))

        result = ScanResult(
            scanned=len(candidates),
            matched=len(pools),
            skipped=skipped,
            truncated=truncated,
            pools=tuple(pools),
        )
        self._scans.set(memcmp, result)
        self.last_scan = result
        logger.debug(
            "Scanned pools",
            scanned=result.scanned,
            matched=result.matched,
            truncated=result.truncated,
        )
        return result

    async def _rehydrate(self, cached: ScanResult) -> ScanResult:
        """Refresh the snapshots behind a cached scan result."""
        addresses = [pool.address for pool in cached.pools]
        results = await asyncio.gather(
            *(self.get_pool_info(address) for address in addresses),
            return_exceptions=True,
        )
        pools: list[Pool] = []
        for address, result in zip(addresses, results):
            if isinstance(result, (NotFound, DecodeError)):
                logger.warning("Cached pool no longer decodable", address=address, error=str(result))
                continue
            if isinstance(result, BaseException):
                raise result
            pools.append(result)
        result = cached.model_copy(update={"pools": tuple(pools), "matched": len(pools)})
        self.last_scan = result
        return result

    def _merge_scans(self, *scans: ScanResult) -> ScanResult:
        """Combine the scans behind one lookup; truncation of any side is kept."""
        by_address = {pool.address: pool for scan in scans for pool in scan.pools}
        result = ScanResult(
            scanned=sum(scan.scanned for scan in scans),
            matched=sum(scan.matched for scan in scans),
            skipped=sum(scan.skipped for scan in scans),
            truncated=any(scan.truncated for scan in scans),
            pools=tuple(by_address[address] for address in sorted(by_address)),
        )
        self.last_scan = result
        return result

    async def find_pools_by_tokens(
        self, token_a: str, token_b: str, refresh: bool = False
    ) -> frozenset[Pool]:
        """Find all pools trading the pair {token_a, token_b} in either order.

        Returns:
            Matching pools; empty if the pair has no pool

        Raises:
            InvalidParams: If both mints are the same
            TransportError: If the ledger is unreachable after retry
        """
        if token_a == token_b:
            raise InvalidParams("Pair mints must differ", mint=token_a)

        forward, backward = await asyncio.gather(
            self.scan_pools(
                ((TOKEN_A_MINT_OFFSET, token_a), (TOKEN_B_MINT_OFFSET, token_b)), refresh
            ),
            self.scan_pools(
                ((TOKEN_A_MINT_OFFSET, token_b), (TOKEN_B_MINT_OFFSET, token_a)), refresh
            ),
        )
        merged = self._merge_scans(forward, backward)
        pools = frozenset(
            pool
            for pool in merged.pools
            if {pool.token_a_mint, pool.token_b_mint} == {token_a, token_b}
        )
        logger.info(
            "Found pools for pair",
            token_a=token_a,
            token_b=token_b,
            count=len(pools),
            truncated=merged.truncated,
        )
        return pools

    async def find_token_pools(self, mint: str, refresh: bool = False) -> list[str]:
        """Addresses of all pools referencing ``mint`` on either side, sorted."""
        side_a, side_b = await asyncio.gather(
            self.scan_pools(((TOKEN_A_MINT_OFFSET, mint),), refresh),
            self.scan_pools(((TOKEN_B_MINT_OFFSET, mint),), refresh),
        )
        merged = self._merge_scans(side_a, side_b)
        addresses = [pool.address for pool in merged.pools if pool.has_mint(mint)]
        logger.info(
            "Found token pools", mint=mint, count=len(addresses), truncated=merged.truncated
        )
        return addresses
