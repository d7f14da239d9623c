"""Tests for transaction signers."""

from solders.keypair import Keypair
from solders.signature import Signature

from ammkit.exec.signers import KeypairSigner, TxnSigner


class TestKeypairSigner:
    """Test KeypairSigner functionality."""

    def test_satisfies_protocol(self):
        """Test that KeypairSigner is accepted where a TxnSigner is expected."""
        assert isinstance(KeypairSigner(Keypair()), TxnSigner)

    def test_pubkey_base58(self):
        keypair = Keypair()
        signer = KeypairSigner(keypair)

        assert signer.pubkey_base58() == str(keypair.pubkey())

    def test_sign_message(self):
        """Test that signatures verify against the signer's public key."""
        keypair = Keypair()
        signer = KeypairSigner(keypair)
        message = b"swap message"

        signature = signer.sign_message(message)

        assert len(signature) == 64
        assert Signature.from_bytes(signature).verify(keypair.pubkey(), message)

    def test_signing_is_deterministic(self):
        signer = KeypairSigner(Keypair())

        assert signer.sign_message(b"abc") == signer.sign_message(b"abc")
        assert signer.sign_message(b"abc") != signer.sign_message(b"abd")
