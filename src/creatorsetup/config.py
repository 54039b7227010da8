# src/creatorsetup/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

Json = Dict[str, Any]

NETWORK_DEVNET = "devnet"
NETWORK_MAINNET = "mainnet-beta"
NETWORK_LOCAL = "local"

NETWORKS = (NETWORK_DEVNET, NETWORK_MAINNET, NETWORK_LOCAL)

DEFAULT_PROGRAM_ID = "deprZ6k7MU6w3REU6hJ2yCfnkbDvzUZaKE4Z4BuZBhU"

_CLUSTER_URLS = {
    NETWORK_DEVNET: "https://api.devnet.solana.com",
    NETWORK_MAINNET: "https://api.mainnet-beta.solana.com",
    NETWORK_LOCAL: "memory://local",
}


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s.strip() if s.strip() else str(default)


def normalize_network(value: Optional[str]) -> str:
    """Map user input onto one of NETWORKS. Unknown values fall back to devnet."""
    s = (value or "").strip().lower()
    if s in {"mainnet", "mainnet-beta", "main"}:
        return NETWORK_MAINNET
    if s in {"local", "memory", "localnet"}:
        return NETWORK_LOCAL
    return NETWORK_DEVNET


def network_label(network: str) -> str:
    """Human label used in operator-facing messages."""
    return "Mainnet" if network == NETWORK_MAINNET else "Devnet"


def export_network_name(network: str) -> str:
    """Value written to the exported config's `network` field."""
    return NETWORK_MAINNET if network == NETWORK_MAINNET else NETWORK_DEVNET


def explorer_url(signature: str, network: str) -> str:
    if network == NETWORK_MAINNET:
        return f"https://solscan.io/tx/{signature}"
    return f"https://solscan.io/tx/{signature}?cluster=devnet"


@dataclass(frozen=True)
class NetworkConfig:
    network: str
    rpc_endpoint: str
    das_endpoint: str
    program_id: str
    commitment: str

    confirm_timeout_s: float
    confirm_poll_s: float
    rpc_timeout_s: float

    mode: str  # "dev" | "prod"

    def to_json(self) -> Json:
        return {
            "network": self.network,
            "rpc_endpoint": self.rpc_endpoint,
            "das_endpoint": self.das_endpoint,
            "program_id": self.program_id,
            "commitment": self.commitment,
            "confirm_timeout_s": self.confirm_timeout_s,
            "confirm_poll_s": self.confirm_poll_s,
            "rpc_timeout_s": self.rpc_timeout_s,
            "mode": self.mode,
        }

    @property
    def label(self) -> str:
        return network_label(self.network)

    def with_network(self, network: str) -> "NetworkConfig":
        """Return a copy targeting another network, re-resolving its endpoints from env."""
        net = normalize_network(network)
        rpc = _rpc_for(net)
        das = _as_str(os.environ.get("CREATORSETUP_DAS_URL"), rpc)
        return replace(self, network=net, rpc_endpoint=rpc, das_endpoint=das)


def _rpc_for(network: str) -> str:
    if network == NETWORK_MAINNET:
        return _as_str(os.environ.get("CREATORSETUP_MAINNET_RPC"), _CLUSTER_URLS[NETWORK_MAINNET])
    if network == NETWORK_LOCAL:
        return _CLUSTER_URLS[NETWORK_LOCAL]
    return _as_str(os.environ.get("CREATORSETUP_DEVNET_RPC"), _CLUSTER_URLS[NETWORK_DEVNET])


def load_network_config(network: Optional[str] = None) -> NetworkConfig:
    """Build a NetworkConfig from CREATORSETUP_* environment variables.

    Junk numeric values fall back to defaults instead of raising, and the
    poll interval is clamped so a confirmation wait can never spin.
    """
    net = normalize_network(network if network is not None else os.environ.get("CREATORSETUP_NETWORK"))
    rpc = _rpc_for(net)

    timeout_s = max(1.0, _as_float(os.environ.get("CREATORSETUP_CONFIRM_TIMEOUT_S"), 60.0))
    poll_s = min(timeout_s, max(0.05, _as_float(os.environ.get("CREATORSETUP_CONFIRM_POLL_S"), 1.0)))

    return NetworkConfig(
        network=net,
        rpc_endpoint=rpc,
        das_endpoint=_as_str(os.environ.get("CREATORSETUP_DAS_URL"), rpc),
        program_id=_as_str(os.environ.get("CREATORSETUP_PROGRAM_ID"), DEFAULT_PROGRAM_ID),
        commitment=_as_str(os.environ.get("CREATORSETUP_COMMITMENT"), "confirmed").lower(),
        confirm_timeout_s=timeout_s,
        confirm_poll_s=poll_s,
        rpc_timeout_s=max(1.0, _as_float(os.environ.get("CREATORSETUP_RPC_TIMEOUT_S"), 10.0)),
        mode=_as_str(os.environ.get("CREATORSETUP_MODE"), "prod").lower(),
    )


def api_bind() -> tuple[str, int]:
    host = _as_str(os.environ.get("CREATORSETUP_API_HOST"), "127.0.0.1")
    port = _as_int(os.environ.get("CREATORSETUP_API_PORT"), 8080)
    return host, port
