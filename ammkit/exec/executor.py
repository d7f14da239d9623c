"""Swap execution with bounded retry and explicit finality tracking."""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from solders.pubkey import Pubkey
from solders.signature import Signature

from ..core.errors import (
    AmmError,
    InsufficientBalance,
    InvalidParams,
    SlippageExceeded,
    TransactionFailed,
    TransportError,
    UnknownOutcome,
)
from ..core.interfaces import LedgerGateway
from ..core.types import (
    WSOL_MINT,
    Pool,
    PriceSample,
    Quote,
    TradeParams,
    TradeState,
    TransactionStatus,
    TxState,
)
from ..ledger.calls import with_timeout
from ..pool.registry import PoolRegistry
from ..price.history import PriceHistory
from ..token.info import decode_token_amount
from .instructions import (
    assemble_transaction,
    build_swap_message,
    get_associated_token_address,
)
from .quote import QuoteEngine
from .signers import TxnSigner

logger = structlog.get_logger(__name__)

_SLIPPAGE_REJECTION = re.compile(
    r"slippage|custom program error: 0x10\b|\"Custom\":\s*16\b", re.IGNORECASE
)
_BLOCKHASH_EXPIRED = re.compile(
    r"blockhash not found|blockhashnotfound|block height exceeded", re.IGNORECASE
)


def is_slippage_rejection(reason: str) -> bool:
    return bool(_SLIPPAGE_REJECTION.search(reason or ""))


def is_blockhash_expired(reason: str) -> bool:
    return bool(_BLOCKHASH_EXPIRED.search(reason or ""))


def _log_abandoned_submission(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Abandoned submission failed", error=str(error))
    else:
        logger.info("Abandoned submission accepted", signature=task.result())


class TradeRecord:
    """Lifecycle of a single swap."""

    def __init__(self, params: TradeParams, quote: Quote) -> None:
        """Initialize a trade in the QUOTED state.

        Args:
            params: Swap request
            quote: Quote fixing the output floor
        """
        self.params = params
        self.quote = quote
        self.state = TradeState.QUOTED
        self.signature: str | None = None
        self.attempts = 0
        self.error: str | None = None
        self.transitions: list[tuple[TradeState, datetime]] = [
            (TradeState.QUOTED, datetime.now(UTC))
        ]

    def transition(self, state: TradeState, **fields: Any) -> None:
        self.state = state
        for name, value in fields.items():
            setattr(self, name, value)
        self.transitions.append((state, datetime.now(UTC)))
        logger.info(
            "Trade state changed",
            state=state.value,
            pool=self.quote.pool_address,
            signature=self.signature,
            attempts=self.attempts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "input_mint": self.params.input_mint,
            "output_mint": self.params.output_mint,
            "amount_in": self.params.amount_in,
            "min_amount_out": self.quote.min_amount_out,
            "pool": self.quote.pool_address,
            "signature": self.signature,
            "attempts": self.attempts,
            "error": self.error,
        }


class TradeExecutor:
    """Executes swaps against the AMM program."""

    def __init__(
        self,
        gateway: LedgerGateway,
        registry: PoolRegistry,
        quote_engine: QuoteEngine,
        program_id: str,
        quote_mint: str = WSOL_MINT,
        history: PriceHistory | None = None,
        max_submit_attempts: int = 3,
        confirm_timeout_seconds: float = 60.0,
        confirm_poll_interval: float = 1.0,
        ledger_timeout_seconds: float = 10.0,
        simulate: bool = True,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            gateway: Ledger gateway used for submission and confirmation
            registry: Pool registry for live reserve reads
            quote_engine: Quote engine
            program_id: AMM program
            quote_mint: Mint executed prices are denominated in
            history: Optional sample store receiving executed prices
            max_submit_attempts: Attempts on transient submission failures
            confirm_timeout_seconds: How long to poll for finality
            confirm_poll_interval: Delay between status polls
            ledger_timeout_seconds: Timeout applied to each ledger call
            simulate: Simulate each signed swap before submitting it
            now_fn: Optional clock (for testing)
        """
        self.gateway = gateway
        self.registry = registry
        self.quote_engine = quote_engine
        self.program_id = Pubkey.from_string(program_id)
        self.quote_mint = quote_mint
        self.history = history
        self.max_submit_attempts = max(1, max_submit_attempts)
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.confirm_poll_interval = confirm_poll_interval
        self.ledger_timeout_seconds = ledger_timeout_seconds
        self.simulate = simulate
        self._now_fn = now_fn or time.time
        self.last_trade: TradeRecord | None = None
        self._detached: set[asyncio.Task] = set()

    async def execute_swap_safe(
        self, params: TradeParams, signer: TxnSigner, quote: Quote | None = None
    ) -> str:
        """Quote, verify against live reserves, submit and confirm a swap.

        Every signed transaction whose submission failed in transit may still
        land, so it stays a candidate for finality. When submission attempts
        run out with such candidates, the swap is tracked to finality instead
        of being reported as retryable.

        Args:
            params: Swap request
            signer: Signer for ``params.user``
            quote: Previously obtained quote; re-derived if expired

        Returns:
            Confirmed transaction signature

        Raises:
            InvalidParams: If the request is malformed or the signer does not match
            InsufficientBalance: If the user's input token account cannot fund the swap
            SlippageExceeded: If live output falls below the quote's floor, or
                the ledger or simulation rejected the swap for slippage
            TransactionFailed: If the ledger or simulation rejected the swap for another reason
            TransportError: If no submission reached the ledger
            UnknownOutcome: If finality could not be determined in time
        """
        if signer.pubkey_base58() != params.user:
            raise InvalidParams(
                "Signer does not match trade user",
                user=params.user,
                signer=signer.pubkey_base58(),
            )

        quote = await self._resolve_quote(params, quote)
        record = TradeRecord(params, quote)
        self.last_trade = record

        try:
            await self._check_balance(params)
            candidates, pool, live = await self._submit(record, params, signer)
        except AmmError as e:
            record.transition(TradeState.FAILED, error=str(e))
            raise

        record.transition(TradeState.SUBMITTED, signature=candidates[-1])
        signature, status = await self._confirm(record, candidates)

        if status.state == TxState.CONFIRMED:
            record.transition(TradeState.CONFIRMED, signature=signature)
            self._record_execution(pool, live)
            return signature

        error = self._classify_rejection(status.reason or "", signature=signature)
        record.transition(TradeState.FAILED, signature=signature, error=str(error))
        raise error

    async def _resolve_quote(self, params: TradeParams, quote: Quote | None) -> Quote:
        if quote is None:
            return await self.quote_engine.get_quote_with_validation(params)

        if (
            quote.input_mint != params.input_mint
            or quote.output_mint != params.output_mint
            or quote.amount_in != params.amount_in
        ):
            raise InvalidParams("Quote does not match trade parameters", pool=quote.pool_address)
        if not self.quote_engine.is_expired(quote):
            return quote

        logger.info("Quote expired, re-deriving", pool=quote.pool_address)
        fresh = await self.quote_engine.get_quote_with_validation(params)
        if fresh.amount_out < quote.min_amount_out:
            raise SlippageExceeded(
                "Re-derived quote below original minimum",
                pool=fresh.pool_address,
                amount=params.amount_in,
                amount_out=fresh.amount_out,
                min_amount_out=quote.min_amount_out,
            )
        return fresh.model_copy(update={"min_amount_out": quote.min_amount_out})

    async def _check_balance(self, params: TradeParams) -> None:
        """Require the user's input token account to hold ``amount_in``."""
        account = str(
            get_associated_token_address(
                Pubkey.from_string(params.user), Pubkey.from_string(params.input_mint)
            )
        )
        data = await with_timeout(
            self.gateway.read_account(account),
            self.ledger_timeout_seconds,
            op="read_account",
            address=account,
        )
        balance = decode_token_amount(account, data) if data is not None else 0
        if balance < params.amount_in:
            raise InsufficientBalance(
                "Input token balance below swap amount",
                account=account,
                balance=balance,
                amount=params.amount_in,
            )

    async def _simulate(self, signed_tx: bytes) -> None:
        simulation = await with_timeout(
            self.gateway.simulate_transaction(signed_tx),
            self.ledger_timeout_seconds,
            op="simulate_transaction",
        )
        if not simulation.success:
            raise TransactionFailed(
                "Swap simulation failed", reason=simulation.reason or "simulation failed"
            )
        logger.debug("Swap simulated", units_consumed=simulation.units_consumed)

    async def _send(self, signed_tx: bytes) -> str:
        """Submit ``signed_tx``; caller cancellation does not abort the request."""
        submission = asyncio.ensure_future(
            with_timeout(
                self.gateway.submit_transaction(signed_tx),
                self.ledger_timeout_seconds,
                op="submit_transaction",
            )
        )
        try:
            return await asyncio.shield(submission)
        except asyncio.CancelledError:
            submission.add_done_callback(_log_abandoned_submission)
            raise

    async def _submit(
        self, record: TradeRecord, params: TradeParams, signer: TxnSigner
    ) -> tuple[list[str], Pool, Quote]:
        """Submit the swap, retrying transient failures with a fresh blockhash.

        Returns:
            Candidate signatures to track to finality, the pool and the live quote
        """
        floor = record.quote.min_amount_out
        user = Pubkey.from_string(params.user)
        last_error: AmmError = TransportError(
            "Swap was not submitted", pool=record.quote.pool_address
        )
        in_flight: list[str] = []
        pool: Pool | None = None
        live: Quote | None = None
        sent: str | None = None

        try:
            for attempt in range(1, self.max_submit_attempts + 1):
                record.attempts = attempt

                landed = await self._find_landed(in_flight)
                if landed is not None:
                    logger.info("Earlier submission landed", signature=landed)
                    return [landed], pool, live

                pool = await self.registry.get_pool_info(record.quote.pool_address, refresh=True)
                live = self.quote_engine.quote_for_pool(params, pool)
                if live.amount_out < floor:
                    raise SlippageExceeded(
                        "Live output below quoted minimum",
                        pool=pool.address,
                        amount=params.amount_in,
                        amount_out=live.amount_out,
                        min_amount_out=floor,
                    )
                live = live.model_copy(update={"min_amount_out": floor})

                sent = None
                try:
                    blockhash = await with_timeout(
                        self.gateway.get_latest_blockhash(),
                        self.ledger_timeout_seconds,
                        op="get_latest_blockhash",
                    )
                    message = build_swap_message(self.program_id, pool, user, live, blockhash)
                    signature_bytes = signer.sign_message(bytes(message))
                    signed_tx = assemble_transaction(message, signature_bytes)
                    if self.simulate:
                        await self._simulate(signed_tx)

                    sent = str(Signature.from_bytes(signature_bytes))
                    signature = await self._send(signed_tx)
                    logger.info(
                        "Swap submitted",
                        signature=signature,
                        pool=pool.address,
                        amount_in=live.amount_in,
                        min_amount_out=floor,
                        attempt=attempt,
                    )
                    return [*in_flight, signature], pool, live

                except TransportError as e:
                    if sent is not None:
                        in_flight.append(sent)
                        sent = None
                    last_error = e
                    logger.warning("Swap submission failed", attempt=attempt, error=str(e))
                except TransactionFailed as e:
                    sent = None
                    if not is_blockhash_expired(e.reason):
                        error = self._classify_rejection(e.reason)
                        if not in_flight:
                            raise error from e
                        logger.warning(
                            "Swap rejected with earlier submissions in flight",
                            signatures=len(in_flight),
                            error=str(error),
                        )
                        return in_flight, pool, live
                    last_error = e
                    logger.warning("Blockhash expired, retrying", attempt=attempt)

        except asyncio.CancelledError:
            if sent is not None:
                in_flight.append(sent)
            if in_flight:
                record.transition(TradeState.SUBMITTED, signature=in_flight[-1])
                self._detach(record, self._poll_finality(list(in_flight)))
            raise

        if in_flight:
            logger.warning(
                "Submission outcome ambiguous, tracking finality",
                signatures=len(in_flight),
                error=str(last_error),
            )
            return in_flight, pool, live
        raise last_error

    async def _find_landed(self, signatures: list[str]) -> str | None:
        for signature in signatures:
            status = await self._fetch_status(signature)
            if status is not None and status.state != TxState.PENDING:
                return signature
        return None

    async def _fetch_status(self, signature: str) -> TransactionStatus | None:
        try:
            return await with_timeout(
                self.gateway.get_transaction_status(signature),
                self.ledger_timeout_seconds,
                op="get_transaction_status",
            )
        except TransportError:
            return None

    def _classify_rejection(self, reason: str, **context: Any) -> AmmError:
        if is_slippage_rejection(reason):
            return SlippageExceeded("Ledger rejected swap for slippage", reason=reason, **context)
        return TransactionFailed("Ledger rejected swap", reason=reason, **context)

    async def _confirm(
        self, record: TradeRecord, signatures: list[str]
    ) -> tuple[str, TransactionStatus]:
        """Wait for finality, shielding the poll from caller cancellation."""
        poller = asyncio.ensure_future(self._poll_finality(signatures))
        try:
            return await asyncio.shield(poller)
        except asyncio.CancelledError:
            self._detach(record, poller)
            raise
        except UnknownOutcome as e:
            record.transition(TradeState.UNKNOWN, error=str(e))
            raise

    def _detach(self, record: TradeRecord, poll: Awaitable[tuple[str, TransactionStatus]]) -> None:
        logger.warning(
            "Swap cancelled after submission, tracking finality in background",
            signature=record.signature,
        )
        task = asyncio.ensure_future(poll)
        self._detached.add(task)
        task.add_done_callback(lambda done: self._finish_detached(record, done))

    def _finish_detached(self, record: TradeRecord, task: asyncio.Future) -> None:
        self._detached.discard(task)
        if task.cancelled():
            record.transition(TradeState.UNKNOWN, error="finality tracking cancelled")
            return
        error = task.exception()
        if error is not None:
            record.transition(TradeState.UNKNOWN, error=str(error))
            logger.error("Detached swap outcome unknown", signature=record.signature, error=str(error))
            return
        signature, status = task.result()
        if status.state == TxState.CONFIRMED:
            record.transition(TradeState.CONFIRMED, signature=signature)
        else:
            record.transition(TradeState.FAILED, signature=signature, error=status.reason)
        logger.info(
            "Detached swap reached finality",
            signature=signature,
            state=status.state.value,
        )

    async def _poll_finality(self, signatures: list[str]) -> tuple[str, TransactionStatus]:
        """Poll candidate signatures until one confirms or all have failed."""
        deadline = asyncio.get_running_loop().time() + self.confirm_timeout_seconds
        while True:
            failed: list[tuple[str, TransactionStatus]] = []
            for signature in signatures:
                status = await self._fetch_status(signature)
                if status is None or status.state == TxState.PENDING:
                    continue
                if status.state == TxState.CONFIRMED:
                    return signature, status
                failed.append((signature, status))
            if len(failed) == len(signatures):
                return failed[-1]
            if asyncio.get_running_loop().time() >= deadline:
                raise UnknownOutcome(
                    "Transaction finality not observed before timeout",
                    signature=signatures[-1],
                    candidates=len(signatures),
                    timeout=self.confirm_timeout_seconds,
                )
            await asyncio.sleep(self.confirm_poll_interval)

    async def wait_detached(self) -> None:
        """Wait for background finality tracking started by cancelled swaps."""
        if self._detached:
            await asyncio.gather(*self._detached, return_exceptions=True)

    def _record_execution(self, pool: Pool, quote: Quote) -> None:
        if self.history is None:
            return
        if quote.output_mint == self.quote_mint:
            mint = quote.input_mint
            token_amount = quote.amount_in / 10 ** pool.decimals_of(quote.input_mint)
            quote_amount = quote.amount_out / 10 ** pool.decimals_of(quote.output_mint)
        elif quote.input_mint == self.quote_mint:
            mint = quote.output_mint
            token_amount = quote.amount_out / 10 ** pool.decimals_of(quote.output_mint)
            quote_amount = quote.amount_in / 10 ** pool.decimals_of(quote.input_mint)
        else:
            return
        if token_amount <= 0 or quote_amount <= 0:
            return
        self.history.record(
            PriceSample(
                mint=mint,
                price=quote_amount / token_amount,
                volume=quote_amount,
                timestamp=datetime.fromtimestamp(self._now_fn(), UTC),
            )
        )
