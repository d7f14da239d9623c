"""Error taxonomy for the AMM engine."""

from typing import Any


class AmmError(Exception):
    """Base error carrying keyword context (mint, pool, amount, ...)."""

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class TransportError(AmmError):
    """Ledger unreachable or timed out. Retryable."""


class NotFound(AmmError):
    """Account missing or not a pool account."""


class DecodeError(AmmError):
    """Account bytes do not match the expected layout."""


class NoLiquidity(AmmError):
    """No pool with reserves exists for the requested mint."""


class InsufficientLiquidity(AmmError):
    """Reserves cannot support the requested trade."""


class InsufficientBalance(AmmError):
    """User token account holds less than the swap input."""


class InvalidParams(AmmError):
    """Caller input failed validation."""


class StalePool(AmmError):
    """Pool snapshot is older than the freshness bound."""


class QuoteExpired(AmmError):
    """Quote is past its freshness window."""


class SlippageExceeded(AmmError):
    """Output would fall below the caller's minimum."""


class TransactionFailed(AmmError):
    """Ledger rejected the transaction."""

    def __init__(self, message: str, reason: str = "", **context: Any) -> None:
        self.reason = reason
        if reason:
            context["reason"] = reason
        super().__init__(message, **context)


class UnknownOutcome(AmmError):
    """Transaction was submitted but its finality could not be determined."""

    def __init__(self, message: str, signature: str, **context: Any) -> None:
        self.signature = signature
        super().__init__(message, signature=signature, **context)


class InsufficientHistory(AmmError):
    """No price samples exist for the mint."""


class ReceiverClosed(AmmError):
    """Price receiver was closed by unsubscribe, shutdown or terminal failure."""
