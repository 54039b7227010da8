# src/creatorsetup/programs.py
from __future__ import annotations

"""Program ids, derived addresses and instruction builders.

Builders are pure: they return Instruction values and never touch the ledger.
"""

from typing import Optional

from creatorsetup.crypto.keys import Pubkey, find_program_address
from creatorsetup.tx.transaction import AccountMeta, Instruction

MPL_CORE_PROGRAM_ID = "CoREENxT6tW1HoK8ypY1SxRMZTcVPm7R94rH4PZNhX7d"
BUBBLEGUM_PROGRAM_ID = "BGUMAp9Gq7iTEuizy4pqaxsTyUCBK68MDfK752saRPUY"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

# Oracle address the protocol uses to mark manually resolved markets.
MANUAL_ORACLE_PLACEHOLDER = "HX5YhqFV88zFhgPxEzmR1GFq8hPccuk2gKW58g1TLvbL"

TOKEN_MINTS = {
    "USDC_MAINNET": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDC_DEVNET": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
    "SOL": "So11111111111111111111111111111111111111112",
    "BONK": "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
}

AUTHORITY_SEED = b"market_creator"
MARKET_SEED = b"market"

MAX_FEE_BPS = 2000
MAX_QUESTION_LEN = 80

# Instruction names understood by the protocol programs.
IX_CREATE_MARKET_CREATOR = "create_market_creator"
IX_VERIFY_MARKET_CREATOR = "verify_market_creator"
IX_UPDATE_FEE_VAULT = "update_market_creator_fee_vault"
IX_UPDATE_FEE = "update_market_creator_fee"
IX_CREATE_MARKET = "create_market"
IX_RESOLVE_MARKET = "resolve_market"
IX_CREATE_COLLECTION = "create_collection_v2"
IX_CREATE_TREE = "create_tree_v2"
IX_SET_TREE_DELEGATE = "set_tree_delegate"


def authority_address(identity: str, program_id: str) -> str:
    """Deterministic market creator address for an operator identity."""
    pda, _ = find_program_address([AUTHORITY_SEED, Pubkey.from_string(identity).raw], Pubkey.from_string(program_id))
    return str(pda)


def tree_config_address(merkle_tree: str) -> str:
    pda, _ = find_program_address([Pubkey.from_string(merkle_tree).raw], Pubkey.from_string(BUBBLEGUM_PROGRAM_ID))
    return str(pda)


def market_address(authority: str, market_id: int, program_id: str) -> str:
    pda, _ = find_program_address(
        [MARKET_SEED, Pubkey.from_string(authority).raw, int(market_id).to_bytes(8, "little")],
        Pubkey.from_string(program_id),
    )
    return str(pda)


def _w(pk: str, signer: bool = False) -> AccountMeta:
    return AccountMeta(pk, is_signer=signer, is_writable=True)


def _r(pk: str, signer: bool = False) -> AccountMeta:
    return AccountMeta(pk, is_signer=signer, is_writable=False)


def create_market_creator(*, program_id: str, signer: str, name: str, fee_vault: str, creator_fee_bps: int) -> Instruction:
    return Instruction(
        program_id=program_id,
        name=IX_CREATE_MARKET_CREATOR,
        accounts=(_w(signer, True), _w(authority_address(signer, program_id)), _r(SYSTEM_PROGRAM_ID)),
        args={"name": name, "fee_vault": fee_vault, "creator_fee_bps": int(creator_fee_bps)},
    )


def verify_market_creator(*, program_id: str, signer: str, core_collection: str, merkle_tree: str) -> Instruction:
    return Instruction(
        program_id=program_id,
        name=IX_VERIFY_MARKET_CREATOR,
        accounts=(
            _w(signer, True),
            _w(authority_address(signer, program_id)),
            _r(core_collection),
            _r(merkle_tree),
            _r(tree_config_address(merkle_tree)),
        ),
    )


def update_fee_vault(*, program_id: str, signer: str, current_fee_vault: str, new_fee_vault: str) -> Instruction:
    return Instruction(
        program_id=program_id,
        name=IX_UPDATE_FEE_VAULT,
        accounts=(_w(signer, True), _w(authority_address(signer, program_id)), _r(current_fee_vault)),
        args={"new_fee_vault": new_fee_vault},
    )


def update_fee(*, program_id: str, signer: str, creator_fee_bps: int) -> Instruction:
    return Instruction(
        program_id=program_id,
        name=IX_UPDATE_FEE,
        accounts=(_w(signer, True), _w(authority_address(signer, program_id))),
        args={"creator_fee_bps": int(creator_fee_bps)},
    )


def create_collection_v2(*, collection: str, payer: str, update_authority: str, name: str, uri: str) -> Instruction:
    return Instruction(
        program_id=MPL_CORE_PROGRAM_ID,
        name=IX_CREATE_COLLECTION,
        accounts=(_w(collection, True), _r(update_authority), _w(payer, True), _r(SYSTEM_PROGRAM_ID)),
        args={"name": name, "uri": uri},
    )


def create_tree_v2(
    *,
    merkle_tree: str,
    payer: str,
    max_depth: int,
    max_buffer_size: int,
    canopy_depth: int,
    public: bool = False,
) -> Instruction:
    return Instruction(
        program_id=BUBBLEGUM_PROGRAM_ID,
        name=IX_CREATE_TREE,
        accounts=(_w(tree_config_address(merkle_tree)), _w(merkle_tree, True), _w(payer, True), _r(SYSTEM_PROGRAM_ID)),
        args={
            "max_depth": int(max_depth),
            "max_buffer_size": int(max_buffer_size),
            "canopy_depth": int(canopy_depth),
            "public": bool(public),
        },
    )


def set_tree_delegate(*, merkle_tree: str, tree_creator: str, new_tree_delegate: str) -> Instruction:
    return Instruction(
        program_id=BUBBLEGUM_PROGRAM_ID,
        name=IX_SET_TREE_DELEGATE,
        accounts=(_w(tree_config_address(merkle_tree)), _r(tree_creator, True), _r(new_tree_delegate), _r(merkle_tree)),
    )


def create_market(
    *,
    program_id: str,
    payer: str,
    market_id: int,
    question: str,
    metadata_uri: str,
    start_time: int,
    end_time: int,
    betting_start_time: Optional[int],
    market_type: str,
    oracle_type: str,
    oracle_pubkey: str,
    mint: str,
) -> Instruction:
    authority = authority_address(payer, program_id)
    return Instruction(
        program_id=program_id,
        name=IX_CREATE_MARKET,
        accounts=(
            _w(payer, True),
            _w(authority),
            _w(market_address(authority, market_id, program_id)),
            _r(oracle_pubkey),
            _r(mint),
            _r(SYSTEM_PROGRAM_ID),
        ),
        args={
            "market_id": int(market_id),
            "question": question,
            "metadata_uri": metadata_uri,
            "start_time": int(start_time),
            "end_time": int(end_time),
            "betting_start_time": None if betting_start_time is None else int(betting_start_time),
            "market_type": market_type,
            "oracle_type": oracle_type,
        },
    )


def resolve_market(
    *,
    program_id: str,
    payer: str,
    market_id: int,
    oracle_pubkey: str,
    resolution_value: Optional[int],
) -> Instruction:
    """resolution_value: 1 = yes, 0 = no, None = read the outcome from the market's oracle."""
    authority = authority_address(payer, program_id)
    return Instruction(
        program_id=program_id,
        name=IX_RESOLVE_MARKET,
        accounts=(
            _w(payer, True),
            _w(authority),
            _w(market_address(authority, market_id, program_id)),
            _r(oracle_pubkey),
        ),
        args={"market_id": int(market_id), "resolution_value": resolution_value},
    )
