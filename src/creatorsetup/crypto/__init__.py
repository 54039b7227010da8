from __future__ import annotations

from creatorsetup.crypto.keys import (
    DEFAULT_PUBKEY,
    Keypair,
    Pubkey,
    b58decode,
    b58encode,
    find_program_address,
    is_default_address,
    parse_address,
)

__all__ = [
    "DEFAULT_PUBKEY",
    "Keypair",
    "Pubkey",
    "b58decode",
    "b58encode",
    "find_program_address",
    "is_default_address",
    "parse_address",
]
