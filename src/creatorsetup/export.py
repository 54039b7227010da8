# src/creatorsetup/export.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from creatorsetup import programs as P
from creatorsetup.config import NetworkConfig, export_network_name
from creatorsetup.errors import NetworkError
from creatorsetup.ledger.client import LedgerClient
from creatorsetup.ledger.types import AccountDecodeError, AuthorityAccount, CollectionAccount, TreeConfigAccount
from creatorsetup.presets import TreePreset, match_preset_by_capacity

Json = Dict[str, Any]

ARTIFACT_WARNING = "This file contains your market creator configuration. Store it securely."
ARTIFACT_PREFIX = "depredict-market-creator-config"


def _compact(d: Json) -> Json:
    return {k: v for k, v in d.items() if v is not None}


def _preset_fields(p: Optional[TreePreset]) -> Json:
    if p is None:
        return {}
    return {
        "maxDepth": p.max_depth,
        "canopyDepth": p.canopy_depth,
        "concurrencyBuffer": p.concurrency_buffer,
        "maxLeaves": p.capacity,
        "estimatedCost": p.estimated_cost,
        "costPerUnit": p.cost_per_unit,
    }


class ConfigExporter:
    """Read-only projection of a provisioned authority into the hand-off artifact.

    The artifact's field names are a durable contract with downstream
    automation; do not rename them.
    """

    def __init__(self, ledger: LedgerClient, cfg: NetworkConfig) -> None:
        self.ledger = ledger
        self.cfg = cfg

    def _collection(self, address: str) -> Optional[CollectionAccount]:
        try:
            return self.ledger.decode(address, CollectionAccount.KIND)
        except (NetworkError, AccountDecodeError):
            return None

    def _tree_config(self, merkle_tree: str) -> Optional[TreeConfigAccount]:
        try:
            return self.ledger.decode(P.tree_config_address(merkle_tree), TreeConfigAccount.KIND)
        except (NetworkError, AccountDecodeError):
            return None

    def tree_config_fields(self, merkle_tree: str, fallback: Optional[TreePreset] = None) -> Optional[Json]:
        """Tree parameters matched to a preset by capacity; the fallback preset when unreadable."""
        tc = self._tree_config(merkle_tree)
        if tc is None:
            fields = _preset_fields(fallback)
            return fields or None
        out = _preset_fields(match_preset_by_capacity(tc.total_mint_capacity))
        out.update(
            {
                "totalCapacity": tc.total_mint_capacity,
                "numFilled": tc.num_minted,
                "delegate": tc.tree_delegate,
            }
        )
        return out

    def build(
        self,
        authority: AuthorityAccount,
        identity: str,
        *,
        collection_name: Optional[str] = None,
        collection_uri: Optional[str] = None,
        preset: Optional[TreePreset] = None,
    ) -> Json:
        """Assemble the artifact from ledger reads.

        Collection name/uri fall back to the operator's form input, tree
        parameters to the selected preset, when the ledger reads fail.
        """
        col = self._collection(authority.core_collection)
        name = col.name if col is not None and col.name else (collection_name or "").strip() or None
        uri = col.uri if col is not None and col.uri else (collection_uri or "").strip() or None

        return _compact(
            {
                "authorityIdentity": identity,
                "authorityAddress": authority.address,
                "authorityName": authority.name,
                "feeRecipient": authority.fee_vault,
                "feeRateBps": authority.creator_fee_bps,
                "feeRatePercent": authority.fee_percent,
                "collectionAddress": authority.core_collection,
                "collectionName": name,
                "collectionUri": uri,
                "treeAddress": authority.merkle_tree,
                "treeConfig": self.tree_config_fields(authority.merkle_tree, preset),
                "verified": authority.verified,
                "network": export_network_name(self.cfg.network),
                "rpcEndpoint": self.cfg.rpc_endpoint,
                "protocolId": self.cfg.program_id,
            }
        )


def download_artifact(config: Json, *, now: Optional[datetime] = None) -> Json:
    ts = now or datetime.now(timezone.utc)
    out = dict(config)
    out["createdAt"] = ts.isoformat().replace("+00:00", "Z")
    out["warning"] = ARTIFACT_WARNING
    return out


def artifact_filename(now_ms: Optional[int] = None) -> str:
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    return f"{ARTIFACT_PREFIX}-{ms}.json"
