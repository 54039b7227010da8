# src/creatorsetup/provisioning/session.py
from __future__ import annotations

"""Provisioning session model and its pure reducer.

The session is a cache of ledger state, never the source of truth. All
transitions go through `reduce(session, event) -> session` so they can be
tested without I/O.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from creatorsetup.config import NETWORK_DEVNET
from creatorsetup.errors import SetupError

Json = Dict[str, Any]


class Step(str, Enum):
    NETWORK = "network"
    CONNECT = "connect"
    CREATE_AUTHORITY = "create_authority"
    CREATE_COLLECTION = "create_collection"
    CREATE_TREE = "create_tree"
    VERIFY = "verify"
    VALIDATE = "validate"
    COMPLETE = "complete"

    @property
    def order(self) -> int:
        return STEP_ORDER.index(self)


STEP_ORDER = (
    Step.NETWORK,
    Step.CONNECT,
    Step.CREATE_AUTHORITY,
    Step.CREATE_COLLECTION,
    Step.CREATE_TREE,
    Step.VERIFY,
    Step.VALIDATE,
    Step.COMPLETE,
)

# Keys under ProvisioningSession.tx_signatures.
SIG_AUTHORITY = "authority"
SIG_COLLECTION = "collection"
SIG_TREE = "tree"
SIG_VERIFY = "verify"


@dataclass(frozen=True)
class SessionError:
    code: str
    message: str
    kind: str
    retryable: bool = False
    fatal: bool = False
    signature: Optional[str] = None
    details: Any = None

    @classmethod
    def from_exception(cls, e: SetupError) -> "SessionError":
        return cls(
            code=e.code,
            message=str(e),
            kind=e.kind,
            retryable=e.retryable,
            fatal=e.fatal,
            signature=e.signature,
            details=e.details,
        )

    def to_json(self) -> Json:
        out: Json = {
            "code": self.code,
            "message": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
        }
        if self.signature:
            out["signature"] = self.signature
        if self.details is not None:
            out["details"] = self.details
        return out


@dataclass(frozen=True)
class References:
    authority: Optional[str] = None
    collection: Optional[str] = None
    merkle_tree: Optional[str] = None
    tree_config: Optional[str] = None

    def merge(self, other: "References") -> "References":
        return References(
            authority=other.authority or self.authority,
            collection=other.collection or self.collection,
            merkle_tree=other.merkle_tree or self.merkle_tree,
            tree_config=other.tree_config or self.tree_config,
        )

    def to_json(self) -> Json:
        return {
            "authority": self.authority,
            "collection": self.collection,
            "merkle_tree": self.merkle_tree,
            "tree_config": self.tree_config,
        }


@dataclass(frozen=True)
class ProvisioningSession:
    step: Step = Step.NETWORK
    network: str = NETWORK_DEVNET
    identity: Optional[str] = None
    loading: bool = False
    error: Optional[SessionError] = None
    halted: bool = False
    network_ready: bool = False
    references: References = field(default_factory=References)
    tx_signatures: Mapping[str, str] = field(default_factory=dict)
    config: Optional[Json] = None

    def to_json(self) -> Json:
        return {
            "step": self.step.value,
            "network": self.network,
            "identity": self.identity,
            "loading": self.loading,
            "error": self.error.to_json() if self.error else None,
            "halted": self.halted,
            "network_ready": self.network_ready,
            "references": self.references.to_json(),
            "tx_signatures": dict(self.tx_signatures),
            "config": self.config,
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NetworkSelected:
    network: str


@dataclass(frozen=True)
class NetworkChecked:
    ready: bool


@dataclass(frozen=True)
class WalletConnected:
    identity: str


@dataclass(frozen=True)
class WalletDisconnected:
    pass


@dataclass(frozen=True)
class Resumed:
    step: Step
    references: References
    config: Optional[Json] = None


@dataclass(frozen=True)
class StepStarted:
    step: Step


@dataclass(frozen=True)
class StepSucceeded:
    step: Step
    next_step: Step
    references: References = field(default_factory=References)
    signature_key: Optional[str] = None
    signature: Optional[str] = None
    config: Optional[Json] = None


@dataclass(frozen=True)
class StepFailed:
    step: Step
    error: SessionError


@dataclass(frozen=True)
class Reset:
    pass


Event = Union[
    NetworkSelected,
    NetworkChecked,
    WalletConnected,
    WalletDisconnected,
    Resumed,
    StepStarted,
    StepSucceeded,
    StepFailed,
    Reset,
]


def _forward(current: Step, wanted: Step) -> Step:
    """Steps only move forward outside of an explicit reset."""
    return wanted if wanted.order > current.order else current


def reduce(session: ProvisioningSession, event: Event) -> ProvisioningSession:
    if isinstance(event, Reset):
        return ProvisioningSession(network=session.network)

    if isinstance(event, NetworkSelected):
        # A new network invalidates everything read from the old one, including the wallet link.
        return ProvisioningSession(step=Step.CONNECT, network=event.network)

    if isinstance(event, NetworkChecked):
        return replace(session, network_ready=bool(event.ready))

    if isinstance(event, WalletConnected):
        if session.identity is not None and session.identity != event.identity:
            # Another identity owns different ledger resources.
            return ProvisioningSession(step=Step.CONNECT, network=session.network, identity=event.identity)
        return replace(session, identity=event.identity, error=None)

    if isinstance(event, WalletDisconnected):
        return replace(session, identity=None, loading=False)

    if isinstance(event, Resumed):
        # The ledger position is adopted outright only on a fresh connection.
        if session.step.order <= Step.CONNECT.order:
            step = event.step
        else:
            step = _forward(session.step, event.step)
        return replace(
            session,
            step=step,
            references=session.references.merge(event.references),
            config=event.config if event.config is not None else session.config,
            loading=False,
            error=None,
        )

    if isinstance(event, StepStarted):
        return replace(session, loading=True, error=None)

    if isinstance(event, StepFailed):
        return replace(
            session,
            loading=False,
            error=event.error,
            halted=session.halted or event.error.fatal,
        )

    if isinstance(event, StepSucceeded):
        sigs = dict(session.tx_signatures)
        if event.signature_key and event.signature:
            sigs[event.signature_key] = event.signature
        return replace(
            session,
            step=_forward(session.step, event.next_step),
            loading=False,
            error=None,
            references=session.references.merge(event.references),
            tx_signatures=sigs,
            config=event.config if event.config is not None else session.config,
        )

    raise TypeError(f"unknown session event: {type(event).__name__}")
