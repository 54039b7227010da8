# src/creatorsetup/ledger/types.py
from __future__ import annotations

"""Decoded ledger account records.

Account data is stored as canonical JSON carrying a "kind" discriminator.
Each record type registers a decoder in SCHEMAS so LedgerClient.decode()
can turn raw account bytes into a typed, immutable view.
"""

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from creatorsetup.crypto.keys import DEFAULT_PUBKEY

Json = Dict[str, Any]

DEFAULT_ADDRESS = str(DEFAULT_PUBKEY)


class AccountDecodeError(ValueError):
    def __init__(self, code: str, msg: str) -> None:
        super().__init__(msg)
        self.code = code


@dataclass(frozen=True, slots=True)
class AccountInfo:
    owner: str
    data: bytes
    lamports: int = 0
    executable: bool = False

    def to_json(self) -> Json:
        return {"owner": self.owner, "lamports": self.lamports, "executable": self.executable, "size": len(self.data)}


def encode_account_data(kind: str, fields: Json) -> bytes:
    body = dict(fields)
    body["kind"] = kind
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _load(info: AccountInfo, kind: str) -> Json:
    if not info.data:
        raise AccountDecodeError("empty_account", "account has no data")
    try:
        j = json.loads(info.data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AccountDecodeError("decode_failed", f"account data is not decodable: {e}") from e
    if not isinstance(j, dict):
        raise AccountDecodeError("bad_shape", "account data must be an object")
    if j.get("kind") != kind:
        raise AccountDecodeError("wrong_kind", f"expected {kind} account, found {j.get('kind')!r}")
    return j


def _addr(v: Any) -> str:
    s = str(v or "").strip()
    return s or DEFAULT_ADDRESS


@dataclass(frozen=True, slots=True)
class AuthorityAccount:
    """The operator's market creator account, addressed by (namespace, identity)."""

    address: str
    authority: str
    name: str
    fee_vault: str
    creator_fee_bps: int
    verified: bool
    core_collection: str = DEFAULT_ADDRESS
    merkle_tree: str = DEFAULT_ADDRESS
    num_markets: int = 0
    active_markets: int = 0

    KIND = "market_creator"

    @property
    def fee_percent(self) -> float:
        return self.creator_fee_bps / 100

    @property
    def has_collection(self) -> bool:
        return self.core_collection != DEFAULT_ADDRESS

    @property
    def has_tree(self) -> bool:
        return self.merkle_tree != DEFAULT_ADDRESS

    def to_data(self) -> bytes:
        d = asdict(self)
        d.pop("address")
        return encode_account_data(self.KIND, d)

    @classmethod
    def decode(cls, address: str, info: AccountInfo) -> "AuthorityAccount":
        j = _load(info, cls.KIND)
        return cls(
            address=address,
            authority=_addr(j.get("authority")),
            name=str(j.get("name") or ""),
            fee_vault=_addr(j.get("fee_vault")),
            creator_fee_bps=int(j.get("creator_fee_bps") or 0),
            verified=bool(j.get("verified", False)),
            core_collection=_addr(j.get("core_collection")),
            merkle_tree=_addr(j.get("merkle_tree")),
            num_markets=int(j.get("num_markets") or 0),
            active_markets=int(j.get("active_markets") or 0),
        )


@dataclass(frozen=True, slots=True)
class CollectionAccount:
    address: str
    update_authority: str
    name: str = ""
    uri: str = ""
    num_minted: int = 0

    KIND = "collection_v1"

    def to_data(self) -> bytes:
        d = asdict(self)
        d.pop("address")
        return encode_account_data(self.KIND, d)

    @classmethod
    def decode(cls, address: str, info: AccountInfo) -> "CollectionAccount":
        j = _load(info, cls.KIND)
        return cls(
            address=address,
            update_authority=_addr(j.get("update_authority")),
            name=str(j.get("name") or ""),
            uri=str(j.get("uri") or ""),
            num_minted=int(j.get("num_minted") or 0),
        )


@dataclass(frozen=True, slots=True)
class MerkleTreeAccount:
    """The tree account itself; depth parameters are immutable after creation."""

    address: str
    max_depth: int
    max_buffer_size: int
    canopy_depth: int
    sequence_number: int = 0

    KIND = "merkle_tree"

    @property
    def capacity(self) -> int:
        return 2 ** int(self.max_depth)

    def to_data(self) -> bytes:
        d = asdict(self)
        d.pop("address")
        return encode_account_data(self.KIND, d)

    @classmethod
    def decode(cls, address: str, info: AccountInfo) -> "MerkleTreeAccount":
        j = _load(info, cls.KIND)
        return cls(
            address=address,
            max_depth=int(j.get("max_depth") or 0),
            max_buffer_size=int(j.get("max_buffer_size") or 0),
            canopy_depth=int(j.get("canopy_depth") or 0),
            sequence_number=int(j.get("sequence_number") or 0),
        )


@dataclass(frozen=True, slots=True)
class TreeConfigAccount:
    """Per-tree config account (derived from the tree address) holding the delegate."""

    address: str
    merkle_tree: str
    tree_creator: str
    tree_delegate: str
    total_mint_capacity: int
    num_minted: int = 0
    is_public: bool = False

    KIND = "tree_config"

    def to_data(self) -> bytes:
        d = asdict(self)
        d.pop("address")
        return encode_account_data(self.KIND, d)

    @classmethod
    def decode(cls, address: str, info: AccountInfo) -> "TreeConfigAccount":
        j = _load(info, cls.KIND)
        return cls(
            address=address,
            merkle_tree=_addr(j.get("merkle_tree")),
            tree_creator=_addr(j.get("tree_creator")),
            tree_delegate=_addr(j.get("tree_delegate")),
            total_mint_capacity=int(j.get("total_mint_capacity") or 0),
            num_minted=int(j.get("num_minted") or 0),
            is_public=bool(j.get("is_public", False)),
        )


class MarketState(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


class MarketType(str, Enum):
    LIVE = "live"
    FUTURE = "future"


class OracleType(str, Enum):
    MANUAL = "manual"
    SWITCHBOARD = "switchboard"


class WinningDirection(str, Enum):
    NONE = "none"
    YES = "yes"
    NO = "no"
    DRAW = "draw"


@dataclass(frozen=True, slots=True)
class Market:
    address: str
    market_id: int
    authority: str
    question: str
    metadata_uri: str
    start_time: int
    end_time: int
    betting_start_time: Optional[int]
    market_type: MarketType
    oracle_type: OracleType
    oracle_pubkey: str
    mint: str
    market_state: MarketState = MarketState.PENDING
    winning_direction: WinningDirection = WinningDirection.NONE

    KIND = "market"

    def to_data(self) -> bytes:
        d = asdict(self)
        d.pop("address")
        for k in ("market_type", "oracle_type", "market_state", "winning_direction"):
            d[k] = getattr(self, k).value
        return encode_account_data(self.KIND, d)

    def to_json(self) -> Json:
        return {
            "address": self.address,
            "market_id": self.market_id,
            "authority": self.authority,
            "question": self.question,
            "metadata_uri": self.metadata_uri,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "betting_start_time": self.betting_start_time,
            "market_type": self.market_type.value,
            "oracle_type": self.oracle_type.value,
            "oracle_pubkey": self.oracle_pubkey,
            "mint": self.mint,
            "market_state": self.market_state.value,
            "winning_direction": self.winning_direction.value,
        }

    @classmethod
    def decode(cls, address: str, info: AccountInfo) -> "Market":
        j = _load(info, cls.KIND)
        bst = j.get("betting_start_time")
        return cls(
            address=address,
            market_id=int(j.get("market_id") or 0),
            authority=_addr(j.get("authority")),
            question=str(j.get("question") or ""),
            metadata_uri=str(j.get("metadata_uri") or ""),
            start_time=int(j.get("start_time") or 0),
            end_time=int(j.get("end_time") or 0),
            betting_start_time=None if bst is None else int(bst),
            market_type=MarketType(j.get("market_type") or MarketType.LIVE.value),
            oracle_type=OracleType(j.get("oracle_type") or OracleType.MANUAL.value),
            oracle_pubkey=_addr(j.get("oracle_pubkey")),
            mint=_addr(j.get("mint")),
            market_state=MarketState(j.get("market_state") or MarketState.PENDING.value),
            winning_direction=WinningDirection(j.get("winning_direction") or WinningDirection.NONE.value),
        )


Decoder = Callable[[str, AccountInfo], Any]

SCHEMAS: Dict[str, Decoder] = {
    AuthorityAccount.KIND: AuthorityAccount.decode,
    CollectionAccount.KIND: CollectionAccount.decode,
    MerkleTreeAccount.KIND: MerkleTreeAccount.decode,
    TreeConfigAccount.KIND: TreeConfigAccount.decode,
    Market.KIND: Market.decode,
}


def decode_account(address: str, info: AccountInfo, schema: str) -> Any:
    decoder = SCHEMAS.get(schema)
    if decoder is None:
        raise AccountDecodeError("unknown_schema", f"no decoder registered for {schema!r}")
    return decoder(address, info)
