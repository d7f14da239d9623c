"""Transaction signers for swap execution."""

from typing import Protocol, runtime_checkable

import structlog
from solders.keypair import Keypair

logger = structlog.get_logger(__name__)


@runtime_checkable
class TxnSigner(Protocol):
    """Protocol for transaction signers."""

    def pubkey_base58(self) -> str:
        """Get the public key in base58 format."""
        ...

    def sign_message(self, message_bytes: bytes) -> bytes:
        """Sign a serialized transaction message.

        Args:
            message_bytes: Serialized message bytes

        Returns:
            64-byte ed25519 signature
        """
        ...


class KeypairSigner:
    """Signer backed by an in-memory Solana keypair.

    Loading and storing secret keys is left to the caller.
    """

    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair
        logger.info("KeypairSigner initialized", pubkey=self.pubkey_base58())

    def pubkey_base58(self) -> str:
        """Get the public key in base58 format."""
        return str(self.keypair.pubkey())

    def sign_message(self, message_bytes: bytes) -> bytes:
        return bytes(self.keypair.sign_message(message_bytes))
