# src/creatorsetup/errors.py
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional

Json = Dict[str, Any]

# Error kinds. Callers branch on these to render guidance, never on message text.
KIND_LOCAL = "local_validation"
KIND_SIGNER = "signer"
KIND_SIMULATION = "simulation"
KIND_SUBMISSION = "submission"
KIND_CONFIRMATION = "confirmation"
KIND_VERIFICATION = "verification"
KIND_VALIDATION = "validation"
KIND_NETWORK = "network"
KIND_STATE = "state"
KIND_INTERNAL = "internal"


@dataclass(eq=False)
class SetupError(Exception):
    """Canonical error type for provisioning and mutation failures."""

    code: str
    reason: str
    details: Any | None = None
    signature: Optional[str] = None

    kind: ClassVar[str] = KIND_INTERNAL
    retryable: ClassVar[bool] = False
    fatal: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.reason)

    def __str__(self) -> str:
        if self.signature:
            return f"{self.reason}. Transaction: {self.signature}"
        return self.reason

    def to_json(self) -> Json:
        out: Json = {
            "code": self.code,
            "kind": self.kind,
            "message": str(self),
            "retryable": self.retryable,
        }
        if self.signature:
            out["signature"] = self.signature
        if self.details is not None:
            out["details"] = self.details
        return out


class LocalValidationError(SetupError):
    """Rejected locally, before any ledger interaction or cost."""

    kind = KIND_LOCAL


class ResourceMissing(SetupError):
    """A resource a step depends on is not on the ledger."""

    kind = KIND_LOCAL

    def __init__(self, resource: str, address: str, reason: str) -> None:
        super().__init__("resource_missing", reason, {"resource": resource, "address": address})
        self.resource = resource
        self.address = address


class NetworkError(SetupError):
    """Transport-level failure talking to the ledger RPC; safe to retry."""

    kind = KIND_NETWORK
    retryable = True


class SignerUnavailable(SetupError):
    kind = KIND_SIGNER

    def __init__(self, reason: str = "Wallet adapter not ready to sign transactions. Please reconnect your wallet.") -> None:
        super().__init__("signer_unavailable", reason)


class SignRejected(SetupError):
    """The operator declined to sign. Nothing was submitted."""

    kind = KIND_SIGNER
    retryable = True

    def __init__(self, reason: str = "Signature request was rejected") -> None:
        super().__init__("sign_rejected", reason)


class SimulationFailed(SetupError):
    kind = KIND_SIMULATION

    def __init__(self, err: Any, logs: Optional[List[str]] = None, *, hint: str = "Transaction simulation failed") -> None:
        self.err = err
        self.logs: List[str] = list(logs or [])
        super().__init__("simulation_failed", f"{hint}: {_render(err)}", {"err": err, "logs": self.logs})


class SubmitFailed(SetupError):
    kind = KIND_SUBMISSION
    retryable = True

    def __init__(self, reason: str, logs: Optional[List[str]] = None, *, signature: Optional[str] = None) -> None:
        self.logs: List[str] = list(logs or [])
        super().__init__("submit_failed", reason, {"logs": self.logs} if self.logs else None, signature)


class ConfirmTimeout(SetupError):
    """Status unknown: the transaction may still land. Check an explorer before retrying."""

    kind = KIND_CONFIRMATION
    retryable = True

    def __init__(self, signature: str, timeout_s: float) -> None:
        super().__init__(
            "confirm_timeout",
            f"Transaction was not confirmed within {timeout_s:g}s; its status is unknown, check a ledger explorer",
            {"timeout_s": timeout_s},
            signature,
        )


class ConfirmFailed(SetupError):
    """Status known: the ledger executed and rejected the transaction."""

    kind = KIND_CONFIRMATION

    def __init__(self, err: Any, signature: str, logs: Optional[List[str]] = None) -> None:
        self.err = err
        self.logs: List[str] = list(logs or [])
        super().__init__("confirm_failed", f"Transaction failed: {_render(err)}", {"err": err, "logs": self.logs}, signature)


class CreatedButUnverifiable(SetupError):
    """The creation confirmed but the created resource could not be read back."""

    kind = KIND_VERIFICATION

    def __init__(self, resource: str, address: str, cause: str, signature: Optional[str]) -> None:
        super().__init__(
            "created_but_unverifiable",
            f"{resource} created but could not be verified on-chain: {cause}",
            {"resource": resource, "address": address},
            signature,
        )


class LinkageMismatch(SetupError):
    """Post-submission read-back found the wrong authority linked. Fatal for the session."""

    kind = KIND_VERIFICATION
    fatal = True

    def __init__(self, relation: str, expected: str, actual: str, *, label: str, signature: Optional[str] = None) -> None:
        self.relation = relation
        self.expected = expected
        self.actual = actual
        super().__init__(
            "linkage_mismatch",
            f"{label} mismatch. Expected {expected} but found {actual}.",
            {"relation": relation, "expected": expected, "actual": actual},
            signature,
        )


class ValidationMismatch(LinkageMismatch):
    """Read-time invariant violation found by Validate; no submission involved."""

    kind = KIND_VALIDATION

    def __init__(self, relation: str, expected: str, actual: str, *, label: str) -> None:
        super().__init__(relation, expected, actual, label=label)
        self.code = "validation_mismatch"


class UnexpectedAccount(SetupError):
    """A linked address holds something other than the account the link requires. Fatal for the session."""

    kind = KIND_VALIDATION
    fatal = True

    def __init__(self, resource: str, address: str, cause: str) -> None:
        super().__init__(
            "unexpected_account",
            f"{resource} address {address} does not hold a {resource.lower()} account: {cause}",
            {"resource": resource, "address": address, "cause": cause},
        )
        self.resource = resource
        self.address = address


class VerificationIncomplete(SetupError):
    """The cross-linking transaction confirmed but the authority still reads as unverified."""

    kind = KIND_VERIFICATION

    def __init__(self, signature: str) -> None:
        super().__init__(
            "still_unverified",
            "Verification transaction succeeded but market creator is still not verified. Please check the transaction logs",
            None,
            signature,
        )


class StepBusy(SetupError):
    kind = KIND_STATE

    def __init__(self, step: str) -> None:
        super().__init__("step_busy", f"Step '{step}' is already in progress", {"step": step})


class InvalidTransition(SetupError):
    kind = KIND_STATE

    def __init__(self, current: str, requested: str, reason: str = "") -> None:
        msg = reason or f"Cannot run step '{requested}' while session is at '{current}'"
        super().__init__("invalid_transition", msg, {"current": current, "requested": requested})


def _render(err: Any) -> str:
    if isinstance(err, str):
        return err
    try:
        return json.dumps(err, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError):
        return repr(err)
