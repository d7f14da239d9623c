"""Solana JSON-RPC ledger gateway."""

import base64
import json
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog
import websockets
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..core.errors import TransactionFailed, TransportError
from ..core.types import AccountFilter, SwapSimulation, TransactionStatus, TxState

logger = structlog.get_logger(__name__)

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def _is_retryable_error(exception) -> bool:
    """Check if an exception is retryable."""
    if isinstance(exception, httpx.TimeoutException):
        return True
    if isinstance(exception, httpx.ConnectError):
        return True
    if isinstance(exception, httpx.NetworkError):
        return True
    if isinstance(exception, SolanaRpcError):
        retryable_codes = {
            -32603,  # Internal error
            -32005,  # Node is unhealthy
            -32004,  # Slot was skipped
            429,  # Too many requests
        }
        return exception.code in retryable_codes
    return False


class SolanaRpcError(Exception):
    """Exception for Solana RPC errors."""

    def __init__(self, code: int, message: str, data: dict | None = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


def _rejection_reason(error: SolanaRpcError) -> str:
    """Flatten an RPC rejection, including preflight logs, into one string."""
    parts = [error.message]
    if isinstance(error.data, dict):
        if error.data.get("err") is not None:
            parts.append(json.dumps(error.data["err"]))
        parts.extend(error.data.get("logs") or [])
    return " | ".join(parts)


class RpcLedgerGateway:
    """Ledger gateway backed by Solana JSON-RPC and the websocket API."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: str | None = None,
        commitment: str = "confirmed",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the gateway.

        Args:
            rpc_url: Solana RPC endpoint URL
            ws_url: Websocket endpoint (derived from rpc_url if omitted)
            commitment: Commitment level for reads and confirmations
            client: Optional httpx client (will create one if not provided)
            timeout: Request timeout in seconds
        """
        if commitment not in _COMMITMENT_RANK:
            raise ValueError(f"Unknown commitment level: {commitment}")
        self.rpc_url = rpc_url
        self.ws_url = ws_url or rpc_url.replace("https://", "wss://").replace(
            "http://", "ws://"
        )
        self.commitment = commitment
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self._request_id = 0
        logger.info(
            "RpcLedgerGateway initialized",
            rpc_url=rpc_url,
            ws_url=self.ws_url,
            commitment=commitment,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _get_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable_error),
        reraise=True,
    )
    async def _make_rpc_request(self, method: str, params: list[Any]) -> Any:
        """Make a JSON-RPC request with retries.

        Raises:
            SolanaRpcError: For RPC-specific errors
            httpx.HTTPError: For HTTP errors
        """
        request_id = self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        }

        start_time = time.time()
        try:
            response = await self.client.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            logger.debug(
                "RPC request completed",
                method=method,
                request_id=request_id,
                duration=time.time() - start_time,
            )

            data = response.json()
            if "error" in data:
                error = data["error"]
                raise SolanaRpcError(
                    code=error.get("code", -1),
                    message=error.get("message", "Unknown RPC error"),
                    data=error.get("data"),
                )
            return data.get("result")

        except httpx.HTTPError as e:
            logger.error(
                "RPC request failed",
                method=method,
                request_id=request_id,
                duration=time.time() - start_time,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Call an RPC method, mapping transport-class failures to TransportError."""
        try:
            return await self._make_rpc_request(method, params)
        except httpx.HTTPError as e:
            raise TransportError("RPC transport failure", method=method, error=str(e)) from e
        except SolanaRpcError as e:
            if _is_retryable_error(e):
                raise TransportError(
                    "RPC node unavailable", method=method, code=e.code, error=e.message
                ) from e
            raise

    async def read_account(self, address: str) -> bytes | None:
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def scan_accounts(self, account_filter: AccountFilter) -> set[tuple[str, bytes]]:
        filters: list[dict[str, Any]] = []
        if account_filter.data_size is not None:
            filters.append({"dataSize": account_filter.data_size})
        for offset, encoded in account_filter.memcmp:
            filters.append({"memcmp": {"offset": offset, "bytes": encoded}})

        result = await self._call(
            "getProgramAccounts",
            [
                account_filter.program_id,
                {
                    "encoding": "base64",
                    "commitment": self.commitment,
                    "filters": filters,
                },
            ],
        )
        accounts = {
            (item["pubkey"], base64.b64decode(item["account"]["data"][0]))
            for item in result or []
        }
        logger.debug(
            "Scanned program accounts",
            program_id=account_filter.program_id,
            count=len(accounts),
        )
        return accounts

    async def subscribe_account(self, address: str) -> AsyncIterator[bytes]:
        request = {
            "jsonrpc": "2.0",
            "id": self._get_request_id(),
            "method": "accountSubscribe",
            "params": [address, {"encoding": "base64", "commitment": self.commitment}],
        }
        try:
            async with websockets.connect(
                self.ws_url, ping_interval=20.0, ping_timeout=10.0
            ) as websocket:
                await websocket.send(json.dumps(request))
                logger.debug("Account subscription opened", address=address)
                async for message in websocket:
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse message", address=address)
                        continue
                    if data.get("method") != "accountNotification":
                        continue
                    value = data["params"]["result"]["value"]
                    if value is None:
                        continue
                    yield base64.b64decode(value["data"][0])
        except (websockets.exceptions.WebSocketException, OSError) as e:
            raise TransportError(
                "Account subscription failed", address=address, error=str(e)
            ) from e
        raise TransportError("Account subscription closed by server", address=address)

    async def submit_transaction(self, signed_tx: bytes) -> str:
        tx_base64 = base64.b64encode(signed_tx).decode("ascii")
        logger.info("Sending transaction", tx_length=len(tx_base64))
        try:
            signature = await self._call(
                "sendTransaction",
                [
                    tx_base64,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "maxRetries": 0,
                        "preflightCommitment": self.commitment,
                    },
                ],
            )
        except SolanaRpcError as e:
            reason = _rejection_reason(e)
            logger.warning("Transaction rejected", code=e.code, reason=reason)
            raise TransactionFailed("Transaction rejected", reason=reason, code=e.code) from e

        logger.info("Transaction sent successfully", signature=signature)
        return signature

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status_info = values[0]
        if status_info is None:
            return TransactionStatus(state=TxState.PENDING)
        if status_info.get("err") is not None:
            return TransactionStatus(
                state=TxState.FAILED,
                reason=json.dumps(status_info["err"]),
                slot=status_info.get("slot"),
            )
        reached = _COMMITMENT_RANK.get(status_info.get("confirmationStatus") or "", -1)
        if reached >= _COMMITMENT_RANK[self.commitment]:
            return TransactionStatus(state=TxState.CONFIRMED, slot=status_info.get("slot"))
        return TransactionStatus(state=TxState.PENDING, slot=status_info.get("slot"))

    async def simulate_transaction(self, signed_tx: bytes) -> SwapSimulation:
        result = await self._call(
            "simulateTransaction",
            [
                base64.b64encode(signed_tx).decode("ascii"),
                {
                    "encoding": "base64",
                    "sigVerify": False,
                    "replaceRecentBlockhash": False,
                    "commitment": self.commitment,
                },
            ],
        )
        value = (result or {}).get("value") or {}
        logs = value.get("logs") or []
        units = value.get("unitsConsumed") or 0
        if value.get("err") is not None:
            reason = " | ".join([json.dumps(value["err"]), *logs])
            logger.info("Simulation failed", reason=reason, units_consumed=units)
            return SwapSimulation(
                success=False, reason=reason, logs=logs, units_consumed=units
            )
        return SwapSimulation(success=True, logs=logs, units_consumed=units)

    async def get_latest_blockhash(self) -> str:
        result = await self._call(
            "getLatestBlockhash", [{"commitment": self.commitment}]
        )
        blockhash = result["value"]["blockhash"]
        logger.debug("Retrieved latest blockhash", blockhash=blockhash[:8] + "...")
        return blockhash
