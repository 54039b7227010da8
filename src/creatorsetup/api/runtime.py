# src/creatorsetup/api/runtime.py
from __future__ import annotations

import threading
from typing import Dict, Optional

from creatorsetup.config import NETWORK_LOCAL, NetworkConfig, load_network_config
from creatorsetup.discovery import AssetIndex, Discovery, RpcAssetIndex
from creatorsetup.ledger.client import LedgerClient, RpcLedgerClient
from creatorsetup.ledger.memory import InMemoryLedger
from creatorsetup.mutations import MutationProtocol
from creatorsetup.provisioning.machine import ProvisioningStateMachine
from creatorsetup.wallet import WalletSession, load_wallet_from_env


class Runtime:
    """Process-wide wiring: one wallet session, one provisioning machine, ledgers per network.

    The in-memory `local` ledger is kept for the life of the process so
    switching networks away and back does not lose its state.
    """

    def __init__(self, cfg: NetworkConfig, wallet: WalletSession) -> None:
        self.wallet = wallet
        self._ledgers: Dict[str, LedgerClient] = {}
        self._lock = threading.Lock()
        self.machine = ProvisioningStateMachine(
            self.ledger_for(cfg),
            wallet,
            cfg,
            ledger_factory=self.ledger_for,
        )
        self._mutations: Optional[MutationProtocol] = None

    @property
    def cfg(self) -> NetworkConfig:
        return self.machine.cfg

    def ledger_for(self, cfg: NetworkConfig) -> LedgerClient:
        if cfg.network != NETWORK_LOCAL:
            return RpcLedgerClient(
                cfg.rpc_endpoint,
                timeout_s=cfg.rpc_timeout_s,
                poll_s=cfg.confirm_poll_s,
                commitment=cfg.commitment,
            )
        with self._lock:
            ledger = self._ledgers.get(NETWORK_LOCAL)
            if ledger is None:
                ledger = InMemoryLedger(program_id=cfg.program_id)
                self._ledgers[NETWORK_LOCAL] = ledger
            return ledger

    def asset_index(self) -> AssetIndex:
        ledger = self.machine.ledger
        if isinstance(ledger, InMemoryLedger):
            return ledger
        return RpcAssetIndex(self.cfg.das_endpoint, timeout_s=self.cfg.rpc_timeout_s)

    @property
    def mutations(self) -> MutationProtocol:
        """Mutation protocol bound to whatever network the machine currently targets."""
        with self._lock:
            m = self._mutations
            if m is None or m.cfg is not self.machine.cfg or m.ledger is not self.machine.ledger:
                m = MutationProtocol(
                    self.machine.ledger,
                    self.wallet,
                    self.machine.cfg,
                    discovery=Discovery(self.machine.ledger, self.asset_index()),
                )
                self._mutations = m
            return m


def build_runtime(cfg: Optional[NetworkConfig] = None) -> Runtime:
    return Runtime(cfg or load_network_config(), load_wallet_from_env())
