# src/creatorsetup/discovery.py
from __future__ import annotations

"""Best-effort discovery of collections and trees associated with an authority.

The asset index can lag or be incomplete. Results here only enrich the
manager view; the authority account's own references stay authoritative and
are always present in the output, whatever the index returns.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from creatorsetup.errors import NetworkError
from creatorsetup.ledger.client import LedgerClient, Poster, http_post_json
from creatorsetup.ledger.types import AuthorityAccount, MerkleTreeAccount
from creatorsetup.logging_utils import log_event

Json = Dict[str, Any]

log = logging.getLogger("creatorsetup.discovery")


class AssetIndex(Protocol):
    def search_assets(self, authority: str, *, limit: int = 100) -> List[Json]: ...


class RpcAssetIndex:
    """DAS `searchAssets` over JSON-RPC."""

    def __init__(self, endpoint: str, *, timeout_s: float = 10.0, post: Poster = http_post_json) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._timeout = timeout_s
        self._post = post
        self._ids = itertools.count(1)

    def search_assets(self, authority: str, *, limit: int = 100) -> List[Json]:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "searchAssets",
            "params": {"owner": authority, "grouping": ["collection"], "limit": int(limit)},
        }
        try:
            decoded = self._post(self.endpoint, body, self._timeout)
        except NetworkError as e:
            code = "das_bad_response" if e.code == "rpc_bad_response" else "das_unreachable"
            raise NetworkError(code, f"searchAssets failed: {e.reason}", e.details) from e

        err = decoded.get("error") if isinstance(decoded, dict) else None
        if err:
            msg = str(err.get("message") if isinstance(err, dict) else err)
            if "no assets found" in msg.lower():
                return []
            raise NetworkError("das_error", f"searchAssets failed: {msg}", {"error": err})
        result = decoded.get("result") if isinstance(decoded, dict) else None
        items = result.get("items") if isinstance(result, dict) else None
        return [i for i in (items or []) if isinstance(i, dict)]


@dataclass(frozen=True)
class CollectionInfo:
    address: str
    is_active: bool
    name: Optional[str] = None

    def to_json(self) -> Json:
        return {"address": self.address, "name": self.name, "is_active": self.is_active}


@dataclass(frozen=True)
class TreeInfo:
    address: str
    is_active: bool
    num_minted: Optional[int] = None
    collection: Optional[str] = None

    def to_json(self) -> Json:
        return {
            "address": self.address,
            "is_active": self.is_active,
            "num_minted": self.num_minted,
            "collection": self.collection,
        }


def _collection_of(item: Json) -> Optional[str]:
    for g in item.get("grouping") or []:
        if isinstance(g, dict) and g.get("group_key") == "collection" and g.get("group_value"):
            return str(g["group_value"])
    return None


def _item_name(item: Json) -> Optional[str]:
    content = item.get("content")
    meta = content.get("metadata") if isinstance(content, dict) else None
    name = meta.get("name") if isinstance(meta, dict) else None
    return str(name) if name else None


class Discovery:
    def __init__(self, ledger: LedgerClient, index: Optional[AssetIndex] = None) -> None:
        self.ledger = ledger
        self.index = index

    def collections(self, authority: AuthorityAccount) -> List[CollectionInfo]:
        active = authority.core_collection if authority.has_collection else None
        found: Dict[str, CollectionInfo] = {}
        if self.index is not None:
            try:
                for item in self.index.search_assets(authority.address, limit=100):
                    addr = _collection_of(item)
                    if addr and addr not in found:
                        found[addr] = CollectionInfo(address=addr, is_active=addr == active, name=_item_name(item))
            except Exception as e:
                log_event(log, "discovery_failed", level=logging.WARNING, what="collections", error=str(e))

        out = list(found.values())
        if active and active not in found:
            out.append(CollectionInfo(address=active, is_active=True))
        return out

    def trees(self, authority: AuthorityAccount, collections: List[CollectionInfo]) -> List[TreeInfo]:
        if not authority.has_tree:
            return []
        associated = next((c.address for c in collections if c.is_active), None)
        num_minted: Optional[int] = None
        try:
            tree = self.ledger.decode(authority.merkle_tree, MerkleTreeAccount.KIND)
            if tree is not None:
                num_minted = tree.sequence_number
        except Exception as e:
            log_event(log, "discovery_failed", level=logging.WARNING, what="trees", error=str(e))
        return [TreeInfo(address=authority.merkle_tree, is_active=True, num_minted=num_minted, collection=associated)]

    def discover(self, authority: AuthorityAccount) -> Json:
        cols = self.collections(authority)
        return {
            "collections": [c.to_json() for c in cols],
            "trees": [t.to_json() for t in self.trees(authority, cols)],
        }
