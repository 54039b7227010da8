# src/creatorsetup/wallet.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from creatorsetup.crypto.keys import Keypair
from creatorsetup.errors import SignerUnavailable, SignRejected
from creatorsetup.tx.transaction import Transaction

# Called with the transaction about to be signed; returning False declines.
Approver = Callable[[Transaction], bool]


class WalletSession(Protocol):
    """Operator identity and signing capability. `identity` is None when not connected."""

    @property
    def identity(self) -> Optional[str]: ...

    @property
    def can_sign(self) -> bool: ...

    def sign_transaction(self, tx: Transaction) -> Transaction: ...

    def sign_all_transactions(self, txs: Sequence[Transaction]) -> List[Transaction]: ...

    def sign_message(self, message: bytes) -> bytes: ...


class DisconnectedWallet:
    identity: Optional[str] = None
    can_sign = False

    def sign_transaction(self, tx: Transaction) -> Transaction:
        raise SignerUnavailable()

    def sign_all_transactions(self, txs: Sequence[Transaction]) -> List[Transaction]:
        raise SignerUnavailable()

    def sign_message(self, message: bytes) -> bytes:
        raise SignerUnavailable()


class KeypairWallet:
    """Wallet backed by a local Ed25519 keypair.

    `approve` stands in for the operator's confirmation prompt. Signing never
    mutates the caller's transaction; a signed copy is returned.
    """

    def __init__(self, keypair: Keypair, *, approve: Optional[Approver] = None) -> None:
        self._kp = keypair
        self._approve = approve
        self._connected = True

    @property
    def identity(self) -> Optional[str]:
        return str(self._kp.pubkey) if self._connected else None

    @property
    def can_sign(self) -> bool:
        return self._connected

    def disconnect(self) -> None:
        self._connected = False

    def connect(self) -> None:
        self._connected = True

    def sign_transaction(self, tx: Transaction) -> Transaction:
        if not self._connected:
            raise SignerUnavailable()
        if self._approve is not None and not self._approve(tx):
            raise SignRejected()
        signed = tx.copy()
        signed.partial_sign(self._kp)
        return signed

    def sign_all_transactions(self, txs: Sequence[Transaction]) -> List[Transaction]:
        return [self.sign_transaction(tx) for tx in txs]

    def sign_message(self, message: bytes) -> bytes:
        if not self._connected:
            raise SignerUnavailable()
        return self._kp.sign(bytes(message))


def load_wallet_from_env() -> WalletSession:
    """Build the operator wallet from CREATORSETUP_KEYPAIR_PATH or CREATORSETUP_KEYPAIR.

    Missing configuration yields a DisconnectedWallet; a configured but
    unreadable key raises ValueError so misconfiguration is loud.
    """
    path = (os.environ.get("CREATORSETUP_KEYPAIR_PATH") or "").strip()
    if path:
        p = Path(path).expanduser()
        if not p.is_file():
            raise ValueError(f"keypair file not found: {p}")
        return KeypairWallet(Keypair.from_string(p.read_text(encoding="utf-8")))

    raw = (os.environ.get("CREATORSETUP_KEYPAIR") or "").strip()
    if raw:
        return KeypairWallet(Keypair.from_string(raw))
    return DisconnectedWallet()
