from __future__ import annotations

from creatorsetup.ledger.client import LedgerClient, RpcLedgerClient
from creatorsetup.ledger.memory import InMemoryLedger

__all__ = ["InMemoryLedger", "LedgerClient", "RpcLedgerClient"]
