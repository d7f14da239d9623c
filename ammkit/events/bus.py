"""Live price fan-out driven by pool account notifications.

Each subscribed mint owns one ledger subscription per pool of the mint,
shared by all of its receivers. Notifications are funnelled into a single
bounded queue consumed by ``start_listening``, which refreshes the pool
snapshot, recomputes the secure price and publishes it to every receiver.
When the listener falls behind, the oldest queued notification is discarded
so pool streams keep reading and reconnecting.

Per-mint states::

    IDLE -> CONNECTING -> STREAMING <-> RECONNECTING -> CLOSED
"""

import asyncio
import itertools
from collections import deque

import structlog

from ..core.errors import (
    DecodeError,
    NoLiquidity,
    NotFound,
    ReceiverClosed,
    TransportError,
)
from ..core.interfaces import LedgerGateway
from ..core.types import Price, StreamState
from ..pool.registry import PoolRegistry
from ..price.aggregator import PriceAggregator

logger = structlog.get_logger(__name__)

_STOP = object()


class PriceReceiver:
    """Consumer end of a price subscription.

    Holds at most ``buffer_size`` unread updates; when full, the oldest unread
    update is discarded and counted in ``dropped``.
    """

    def __init__(self, mint: str, receiver_id: int, buffer_size: int) -> None:
        self.mint = mint
        self.id = receiver_id
        self.buffer_size = buffer_size
        self.dropped = 0
        self.closed = False
        self.error: Exception | None = None
        self._buffer: deque[Price] = deque()
        self._ready = asyncio.Event()

    def __repr__(self) -> str:
        return f"PriceReceiver(mint={self.mint!r}, id={self.id}, closed={self.closed})"

    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, price: Price) -> None:
        if self.closed:
            return
        if len(self._buffer) >= self.buffer_size:
            self._buffer.popleft()
            self.dropped += 1
        self._buffer.append(price)
        self._ready.set()

    def _close(self, error: Exception | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.error = error
        self._ready.set()

    async def recv(self) -> Price:
        """Next price update.

        Updates buffered before closing are still delivered.

        Raises:
            ReceiverClosed: Once the receiver is closed and drained
        """
        while not self._buffer:
            if self.closed:
                raise ReceiverClosed(
                    "Price receiver closed",
                    mint=self.mint,
                    error=str(self.error) if self.error else None,
                )
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Price:
        try:
            return await self.recv()
        except ReceiverClosed:
            raise StopAsyncIteration from None


class _MintStream:
    """Subscription table entry of one mint."""

    def __init__(self, mint: str, pool_addresses: list[str]) -> None:
        self.mint = mint
        self.pool_addresses = pool_addresses
        self.state = StreamState.CONNECTING
        self.receivers: dict[int, PriceReceiver] = {}
        self.tasks: list[asyncio.Task] = []
        self.error: Exception | None = None


class PriceEventBus:
    """Maintains live price subscriptions per mint and fans updates out."""

    def __init__(
        self,
        gateway: LedgerGateway,
        registry: PoolRegistry,
        aggregator: PriceAggregator,
        buffer_size: int = 100,
        max_reconnect_attempts: int = 5,
        reconnect_base_delay: float = 0.5,
        reconnect_max_delay: float = 30.0,
    ) -> None:
        """Initialize the event bus.

        Args:
            gateway: Ledger gateway providing account notifications
            registry: Pool registry refreshed from notifications
            aggregator: Price aggregator used to recompute prices
            buffer_size: Unread updates kept per receiver
            max_reconnect_attempts: Consecutive failed reconnects before closing a mint
            reconnect_base_delay: First reconnect delay in seconds
            reconnect_max_delay: Cap on the reconnect delay
        """
        if buffer_size < 1:
            raise ValueError("buffer_size must be positive")
        self.gateway = gateway
        self.registry = registry
        self.aggregator = aggregator
        self.buffer_size = buffer_size
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay

        self._streams: dict[str, _MintStream] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._updates: asyncio.Queue = asyncio.Queue(maxsize=buffer_size * 10)
        self.dropped_notifications = 0
        self._listening = False
        self._closed = False

    # -------------------------
    # Introspection
    # -------------------------
    def state(self, mint: str) -> StreamState:
        stream = self._streams.get(mint)
        return stream.state if stream is not None else StreamState.IDLE

    def subscription_count(self) -> int:
        """Number of open receivers across all mints."""
        return sum(len(stream.receivers) for stream in self._streams.values())

    def active_mints(self) -> list[str]:
        return sorted(
            mint
            for mint, stream in self._streams.items()
            if stream.state != StreamState.CLOSED
        )

    # -------------------------
    # Subscription management
    # -------------------------
    def _is_open(self, mint: str) -> bool:
        stream = self._streams.get(mint)
        return stream is not None and stream.state != StreamState.CLOSED

    async def _discover(self, mint: str) -> list[str]:
        addresses = await self.registry.find_token_pools(mint)
        if not addresses:
            raise NoLiquidity("No pools to stream", mint=mint)
        return addresses

    async def subscribe(self, mint: str) -> PriceReceiver:
        """Register a receiver for price updates of ``mint``.

        The first receiver of a mint opens the ledger subscriptions.

        Raises:
            NoLiquidity: If the mint has no pools
            TransportError: If pool discovery fails after retry
            RuntimeError: If the bus is closed
        """
        if self._closed:
            raise RuntimeError("Event bus is closed")

        addresses = None if self._is_open(mint) else await self._discover(mint)

        async with self._lock:
            stream = self._streams.get(mint)
            if stream is None or stream.state == StreamState.CLOSED:
                if addresses is None:
                    addresses = await self._discover(mint)
                stream = _MintStream(mint, addresses)
                self._streams[mint] = stream
                stream.tasks = [
                    asyncio.create_task(self._pump(stream, address)) for address in addresses
                ]
                logger.info("Opened price stream", mint=mint, pools=len(addresses))

            receiver = PriceReceiver(mint, next(self._ids), self.buffer_size)
            stream.receivers[receiver.id] = receiver

        logger.info(
            "Subscribed to price updates",
            mint=mint,
            receiver=receiver.id,
            receivers=len(stream.receivers),
        )
        return receiver

    async def unsubscribe(self, receiver: PriceReceiver) -> None:
        """Close ``receiver``; the last receiver of a mint tears its stream down."""
        tasks: list[asyncio.Task] = []
        async with self._lock:
            receiver._close()
            stream = self._streams.get(receiver.mint)
            if stream is None or stream.receivers.pop(receiver.id, None) is None:
                return
            if not stream.receivers:
                del self._streams[receiver.mint]
                tasks = stream.tasks
                logger.info("Closed price stream", mint=receiver.mint)

        await self._cancel(tasks)

    async def _cancel(self, tasks: list[asyncio.Task]) -> None:
        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------
    # Ledger streams
    # -------------------------
    def _backoff(self, failures: int) -> float:
        return min(
            self.reconnect_base_delay * 2 ** (failures - 1), self.reconnect_max_delay
        )

    async def _pump(self, stream: _MintStream, address: str) -> None:
        """Forward notifications of one pool account, reconnecting on failure."""
        failures = 0
        while True:
            try:
                async for data in self.gateway.subscribe_account(address):
                    failures = 0
                    if stream.state != StreamState.STREAMING:
                        stream.state = StreamState.STREAMING
                        logger.info("Price stream live", mint=stream.mint, pool=address)
                    self._enqueue((stream, address, data))
                error: Exception = TransportError(
                    "Account subscription ended", address=address
                )
            except TransportError as e:
                error = e
            except Exception as e:
                logger.exception("Price stream failed", mint=stream.mint, pool=address)
                await self._terminate(stream, e)
                return

            failures += 1
            if failures > self.max_reconnect_attempts:
                await self._terminate(stream, error)
                return

            stream.state = StreamState.RECONNECTING
            delay = self._backoff(failures)
            logger.warning(
                "Price stream disconnected, reconnecting",
                mint=stream.mint,
                pool=address,
                attempt=failures,
                delay=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)

    def _enqueue(self, item: tuple[_MintStream, str, bytes]) -> None:
        """Queue a notification for the listener, discarding the oldest when full."""
        if self._updates.full():
            self._updates.get_nowait()
            self.dropped_notifications += 1
            logger.debug("Dropped stale notification", dropped=self.dropped_notifications)
        self._updates.put_nowait(item)

    async def _terminate(self, stream: _MintStream, error: Exception) -> None:
        async with self._lock:
            if stream.state == StreamState.CLOSED:
                return
            stream.state = StreamState.CLOSED
            stream.error = error
            for receiver in stream.receivers.values():
                receiver._close(error)
            stream.receivers.clear()
            tasks = stream.tasks

        logger.error(
            "Price stream closed after reconnect attempts exhausted",
            mint=stream.mint,
            attempts=self.max_reconnect_attempts,
            error=str(error),
        )
        await self._cancel(tasks)

    # -------------------------
    # Publication
    # -------------------------
    async def start_listening(self) -> None:
        """Recompute and publish prices for incoming notifications until ``close()``.

        Raises:
            RuntimeError: If already listening
        """
        if self._listening:
            raise RuntimeError("Event bus is already listening")
        self._listening = True
        logger.info("Event bus listening")
        try:
            while True:
                item = await self._updates.get()
                if item is _STOP:
                    break
                stream, address, data = item
                await self._handle(stream, address, data)
        finally:
            self._listening = False
            logger.info("Event bus stopped")

    async def _handle(self, stream: _MintStream, address: str, data: bytes) -> None:
        if stream.state == StreamState.CLOSED or not stream.receivers:
            return
        try:
            self.registry.ingest(address, data)
        except (NotFound, DecodeError) as e:
            logger.warning("Ignoring undecodable notification", pool=address, error=str(e))
            return
        try:
            price = await self.aggregator.get_secure_price(stream.mint)
        except (NoLiquidity, TransportError) as e:
            logger.warning("Price recomputation failed", mint=stream.mint, error=str(e))
            return
        await self.publish(stream.mint, price)

    async def publish(self, mint: str, price: Price) -> int:
        """Deliver ``price`` to every receiver of ``mint`` without waiting on them.

        Returns:
            Number of receivers the update was delivered to
        """
        async with self._lock:
            stream = self._streams.get(mint)
            if stream is None:
                return 0
            receivers = list(stream.receivers.values())
            for receiver in receivers:
                receiver._push(price)
        logger.debug("Published price", mint=mint, price=price.sol_price, receivers=len(receivers))
        return len(receivers)

    async def close(self) -> None:
        """Stop every stream, close all receivers and end ``start_listening``."""
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            streams = list(self._streams.values())
            self._streams.clear()
            tasks = [task for stream in streams for task in stream.tasks]
            for stream in streams:
                stream.state = StreamState.CLOSED
                for receiver in stream.receivers.values():
                    receiver._close()
                stream.receivers.clear()

        await self._cancel(tasks)

        while not self._updates.empty():
            self._updates.get_nowait()
        self._updates.put_nowait(_STOP)
        logger.info("Event bus closed", streams=len(streams))
