"""Shared fixtures: an in-memory ledger, a controllable clock and pool factories."""

import asyncio
import struct
from collections.abc import AsyncIterator

import pytest
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from ammkit.core.errors import TransportError
from ammkit.core.types import (
    USDC_MINT,
    WSOL_MINT,
    AccountFilter,
    Pool,
    SwapSimulation,
    TransactionStatus,
    TxState,
)
from ammkit.exec.instructions import TOKEN_PROGRAM_ID, get_associated_token_address
from ammkit.pool.layout import encode_pool


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """In-memory ledger gateway with scriptable failures."""

    def __init__(self) -> None:
        self.program_id = str(Pubkey.new_unique())
        self.accounts: dict[str, bytes] = {}
        self.owners: dict[str, str] = {}
        self.read_failures = 0
        self.scan_failures = 0
        self.read_delay = 0.0
        self.read_calls = 0
        self.scan_calls = 0

        self.subscribe_failures = 0
        self.always_fail_subscribe = False
        self.subscribe_calls = 0
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

        self.submitted: list[bytes] = []
        self.submit_errors: list[Exception] = []
        self.land_despite_error = False
        self.land_attempts: set[int] = set()
        self.submit_delay = 0.0
        self.landed: set[str] = set()
        self.statuses: dict[str, list[TransactionStatus]] = {}
        self.default_status = TransactionStatus(state=TxState.CONFIRMED, slot=1)
        self.status_calls = 0
        self.blockhash_calls = 0
        self.blockhash_failures = 0
        self.simulation_failures: list[str] = []
        self.simulated: list[bytes] = []

    # -- accounts --
    def put_account(self, address: str, data: bytes, owner: str | None = None) -> None:
        self.accounts[address] = data
        self.owners[address] = owner or self.program_id

    def put_pool(self, pool: Pool) -> None:
        self.put_account(pool.address, encode_pool(pool))

    def put_token_account(self, owner: str, mint: str, amount: int) -> str:
        """Store ``owner``'s associated token account for ``mint`` holding ``amount``."""
        address = str(
            get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint))
        )
        data = bytearray(165)
        data[0:32] = bytes(Pubkey.from_string(mint))
        data[32:64] = bytes(Pubkey.from_string(owner))
        struct.pack_into("<Q", data, 64, amount)
        self.put_account(address, bytes(data), owner=str(TOKEN_PROGRAM_ID))
        return address

    async def read_account(self, address: str) -> bytes | None:
        self.read_calls += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.read_failures:
            self.read_failures -= 1
            raise TransportError("ledger unreachable", address=address)
        return self.accounts.get(address)

    async def scan_accounts(self, account_filter: AccountFilter) -> set[tuple[str, bytes]]:
        self.scan_calls += 1
        if self.scan_failures:
            self.scan_failures -= 1
            raise TransportError("ledger unreachable")
        matches = set()
        for address, data in self.accounts.items():
            if self.owners.get(address) != account_filter.program_id:
                continue
            if account_filter.data_size is not None and len(data) != account_filter.data_size:
                continue
            if all(
                data[offset : offset + 32] == bytes(Pubkey.from_string(encoded))
                for offset, encoded in account_filter.memcmp
            ):
                matches.add((address, data))
        return matches

    # -- subscriptions --
    async def subscribe_account(self, address: str) -> AsyncIterator[bytes]:
        self.subscribe_calls += 1
        if self.always_fail_subscribe:
            raise TransportError("subscription refused", address=address)
        if self.subscribe_failures:
            self.subscribe_failures -= 1
            raise TransportError("subscription refused", address=address)

        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(address, []).append(queue)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self._subscribers[address].remove(queue)

    def notify(self, address: str, data: bytes) -> None:
        self.accounts[address] = data
        for queue in list(self._subscribers.get(address, [])):
            queue.put_nowait(data)

    def notify_pool(self, pool: Pool) -> None:
        self.notify(pool.address, encode_pool(pool))

    def drop(self, address: str) -> None:
        for queue in list(self._subscribers.get(address, [])):
            queue.put_nowait(TransportError("connection dropped", address=address))

    def subscriber_count(self, address: str | None = None) -> int:
        if address is not None:
            return len(self._subscribers.get(address, []))
        return sum(len(queues) for queues in self._subscribers.values())

    # -- transactions --
    async def submit_transaction(self, signed_tx: bytes) -> str:
        self.submitted.append(signed_tx)
        attempt = len(self.submitted)
        signature = str(Transaction.from_bytes(signed_tx).signatures[0])
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_errors:
            if self.land_despite_error or attempt in self.land_attempts:
                self.landed.add(signature)
            raise self.submit_errors.pop(0)
        self.landed.add(signature)
        return signature

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        """Scripted status, else ``default_status`` for landed signatures, else pending."""
        self.status_calls += 1
        scripted = self.statuses.get(signature)
        if scripted:
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if signature in self.landed:
            return self.default_status
        return TransactionStatus(state=TxState.PENDING)

    async def simulate_transaction(self, signed_tx: bytes) -> SwapSimulation:
        self.simulated.append(signed_tx)
        if self.simulation_failures:
            return SwapSimulation(success=False, reason=self.simulation_failures.pop(0))
        return SwapSimulation(success=True, units_consumed=5_000)

    async def get_latest_blockhash(self) -> str:
        self.blockhash_calls += 1
        if self.blockhash_failures:
            self.blockhash_failures -= 1
            raise TransportError("ledger unreachable")
        return str(Hash.new_unique())


def build_pool(
    token_a: str | None = None,
    token_b: str | None = None,
    reserve_a: int = 1_000_000_000,
    reserve_b: int = 1_000_000_000,
    decimals_a: int = 6,
    decimals_b: int = 9,
    fee_bps: int = 30,
    address: str | None = None,
) -> Pool:
    return Pool(
        address=address or str(Pubkey.new_unique()),
        token_a_mint=token_a or str(Pubkey.new_unique()),
        token_b_mint=token_b or str(Pubkey.new_unique()),
        token_a_vault=str(Pubkey.new_unique()),
        token_b_vault=str(Pubkey.new_unique()),
        lp_mint=str(Pubkey.new_unique()),
        fee_account=str(Pubkey.new_unique()),
        token_a_decimals=decimals_a,
        token_b_decimals=decimals_b,
        token_a_reserve_amount=reserve_a,
        token_b_reserve_amount=reserve_b,
        lp_supply=1_000_000,
        trade_fee_bps=fee_bps,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_pool():
    """Factory for pool snapshots with fresh addresses."""
    return build_pool


@pytest.fixture
def token_mint() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def sol_pool(ledger, make_pool):
    """Register a token/SOL pool on the ledger; token side has 6 decimals."""

    def _create(mint: str, token_reserve: int, sol_reserve: int, fee_bps: int = 30) -> Pool:
        pool = make_pool(
            token_a=mint,
            token_b=WSOL_MINT,
            reserve_a=token_reserve,
            reserve_b=sol_reserve,
            decimals_a=6,
            decimals_b=9,
            fee_bps=fee_bps,
        )
        ledger.put_pool(pool)
        return pool

    return _create


@pytest.fixture
def usd_pool(ledger, make_pool):
    """Register a SOL/USDC pool priced at ``usd_per_sol``."""

    def _create(usd_per_sol: float = 150.0, sol: int = 1_000) -> Pool:
        pool = make_pool(
            token_a=WSOL_MINT,
            token_b=USDC_MINT,
            reserve_a=sol * 10**9,
            reserve_b=int(sol * usd_per_sol * 10**6),
            decimals_a=9,
            decimals_b=6,
        )
        ledger.put_pool(pool)
        return pool

    return _create
