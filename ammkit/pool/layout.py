"""Pool account byte layout.

Layout (little endian, 300 bytes)::

    0    8   discriminator
    8    32  token_a_mint
    40   32  token_b_mint
    72   32  token_a_vault
    104  32  token_b_vault
    136  32  lp_mint
    168  32  fee_account
    200  1   layout version
    201  1   token_a_decimals
    202  1   token_b_decimals
    203  8   token_a_reserve_amount
    211  8   token_b_reserve_amount
    219  8   lp_supply
    227  2   trade_fee_bps
    229  71  reserved
"""

import struct
from datetime import datetime

from solders.pubkey import Pubkey

from ..core.errors import DecodeError, NotFound
from ..core.types import BPS_DENOMINATOR, Pool

POOL_DISCRIMINATOR = b"ammpool\x00"
POOL_ACCOUNT_SIZE = 300
LAYOUT_VERSION = 1

TOKEN_A_MINT_OFFSET = 8
TOKEN_B_MINT_OFFSET = 40

_KEYS = struct.Struct("<8s32s32s32s32s32s32s")
_PARAMS = struct.Struct("<BBBQQQH")
_PARAMS_OFFSET = _KEYS.size
_RESERVED = POOL_ACCOUNT_SIZE - _KEYS.size - _PARAMS.size


def _key_bytes(address: str) -> bytes:
    return bytes(Pubkey.from_string(address))


def _key_str(raw: bytes) -> str:
    return str(Pubkey.from_bytes(raw))


def encode_pool(pool: Pool) -> bytes:
    """Serialize a pool snapshot into account bytes.

    Raises:
        ValueError: If an address is not a valid public key
    """
    keys = _KEYS.pack(
        POOL_DISCRIMINATOR,
        _key_bytes(pool.token_a_mint),
        _key_bytes(pool.token_b_mint),
        _key_bytes(pool.token_a_vault),
        _key_bytes(pool.token_b_vault),
        _key_bytes(pool.lp_mint),
        _key_bytes(pool.fee_account),
    )
    params = _PARAMS.pack(
        LAYOUT_VERSION,
        pool.token_a_decimals,
        pool.token_b_decimals,
        pool.token_a_reserve_amount,
        pool.token_b_reserve_amount,
        pool.lp_supply,
        pool.trade_fee_bps,
    )
    return keys + params + bytes(_RESERVED)


def is_pool_account(data: bytes) -> bool:
    return data[: len(POOL_DISCRIMINATOR)] == POOL_DISCRIMINATOR


def decode_pool(address: str, data: bytes, fetched_at: datetime | None = None) -> Pool:
    """Decode pool account bytes.

    Args:
        address: Account address
        data: Raw account data
        fetched_at: Snapshot time to stamp on the result

    Returns:
        Pool snapshot

    Raises:
        NotFound: If the account is not a pool account
        DecodeError: If the layout does not match the expected schema
    """
    if not is_pool_account(data):
        raise NotFound("Account is not a pool account", address=address)
    if len(data) < POOL_ACCOUNT_SIZE:
        raise DecodeError(
            "Pool account too short",
            address=address,
            size=len(data),
            expected=POOL_ACCOUNT_SIZE,
        )

    (
        _,
        token_a_mint,
        token_b_mint,
        token_a_vault,
        token_b_vault,
        lp_mint,
        fee_account,
    ) = _KEYS.unpack_from(data, 0)
    (
        version,
        token_a_decimals,
        token_b_decimals,
        reserve_a,
        reserve_b,
        lp_supply,
        fee_bps,
    ) = _PARAMS.unpack_from(data, _PARAMS_OFFSET)

    if version != LAYOUT_VERSION:
        raise DecodeError(
            "Unsupported pool layout version", address=address, version=version
        )
    if fee_bps >= BPS_DENOMINATOR:
        raise DecodeError("Pool fee out of range", address=address, fee_bps=fee_bps)

    return Pool(
        address=address,
        token_a_mint=_key_str(token_a_mint),
        token_b_mint=_key_str(token_b_mint),
        token_a_vault=_key_str(token_a_vault),
        token_b_vault=_key_str(token_b_vault),
        lp_mint=_key_str(lp_mint),
        fee_account=_key_str(fee_account),
        token_a_decimals=token_a_decimals,
        token_b_decimals=token_b_decimals,
        token_a_reserve_amount=reserve_a,
        token_b_reserve_amount=reserve_b,
        lp_supply=lp_supply,
        trade_fee_bps=fee_bps,
        fetched_at=fetched_at,
    )
