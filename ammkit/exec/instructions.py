"""Swap instruction and transaction assembly."""

import struct

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from ..core.types import Pool, Quote

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

SWAP_INSTRUCTION_TAG = 9
CREATE_IDEMPOTENT_TAG = 1
POOL_AUTHORITY_SEED = b"amm"

_SWAP_DATA = struct.Struct("<BQQ")


def get_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def pool_authority(pool: Pubkey, program_id: Pubkey) -> Pubkey:
    """Program-derived authority signing for the pool's vaults."""
    address, _ = Pubkey.find_program_address([POOL_AUTHORITY_SEED, bytes(pool)], program_id)
    return address


def create_ata_idempotent_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    """Create ``owner``'s token account for ``mint`` unless it already exists."""
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([CREATE_IDEMPOTENT_TAG]),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(get_associated_token_address(owner, mint), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def encode_swap_data(amount_in: int, min_amount_out: int) -> bytes:
    return _SWAP_DATA.pack(SWAP_INSTRUCTION_TAG, amount_in, min_amount_out)


def build_swap_instruction(
    program_id: Pubkey, pool: Pool, user: Pubkey, quote: Quote
) -> Instruction:
    """Build the pool program's swap instruction for ``quote``.

    Args:
        program_id: AMM program
        pool: Pool snapshot the quote was derived from
        user: Trader, signing and paying
        quote: Quote fixing the input amount and the output floor

    Returns:
        Swap instruction
    """
    pool_key = Pubkey.from_string(pool.address)
    input_mint = Pubkey.from_string(quote.input_mint)
    output_mint = Pubkey.from_string(quote.output_mint)
    if quote.input_mint == pool.token_a_mint:
        vault_in, vault_out = pool.token_a_vault, pool.token_b_vault
    else:
        vault_in, vault_out = pool.token_b_vault, pool.token_a_vault

    accounts = [
        AccountMeta(pool_key, is_signer=False, is_writable=True),
        AccountMeta(pool_authority(pool_key, program_id), is_signer=False, is_writable=False),
        AccountMeta(user, is_signer=True, is_writable=True),
        AccountMeta(get_associated_token_address(user, input_mint), is_signer=False, is_writable=True),
        AccountMeta(get_associated_token_address(user, output_mint), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(vault_in), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(vault_out), is_signer=False, is_writable=True),
        AccountMeta(Pubkey.from_string(pool.fee_account), is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(
        program_id, encode_swap_data(quote.amount_in, quote.min_amount_out), accounts
    )


def build_swap_message(
    program_id: Pubkey, pool: Pool, user: Pubkey, quote: Quote, blockhash: str
) -> Message:
    """Message creating the output token account if needed, then swapping."""
    instructions = [
        create_ata_idempotent_ix(user, user, Pubkey.from_string(quote.output_mint)),
        build_swap_instruction(program_id, pool, user, quote),
    ]
    return Message.new_with_blockhash(instructions, user, Hash.from_string(blockhash))


def assemble_transaction(message: Message, signature: bytes) -> bytes:
    """Serialize a single-signer transaction."""
    return bytes(Transaction.populate(message, [Signature.from_bytes(signature)]))
