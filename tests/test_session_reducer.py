# tests/test_session_reducer.py
from __future__ import annotations

import pytest

from creatorsetup.errors import LinkageMismatch, NetworkError
from creatorsetup.provisioning.session import (
    SIG_AUTHORITY,
    STEP_ORDER,
    NetworkChecked,
    NetworkSelected,
    ProvisioningSession,
    References,
    Reset,
    Resumed,
    SessionError,
    Step,
    StepFailed,
    StepStarted,
    StepSucceeded,
    WalletConnected,
    WalletDisconnected,
    reduce,
)


def _session(step: Step, **kw) -> ProvisioningSession:
    kw.setdefault("identity", "OperatorA")
    return ProvisioningSession(step=step, network="devnet", **kw)


def test_step_order_is_the_wizard_order() -> None:
    assert [s.value for s in STEP_ORDER] == [
        "network",
        "connect",
        "create_authority",
        "create_collection",
        "create_tree",
        "verify",
        "validate",
        "complete",
    ]
    assert Step.VERIFY.order > Step.CREATE_TREE.order


def test_success_advances_and_records_signature() -> None:
    s = reduce(_session(Step.CREATE_AUTHORITY), StepStarted(Step.CREATE_AUTHORITY))
    assert s.loading is True

    out = reduce(
        s,
        StepSucceeded(Step.CREATE_AUTHORITY, Step.CREATE_COLLECTION, References(authority="Auth1"), SIG_AUTHORITY, "sig-1"),
    )
    assert out.step == Step.CREATE_COLLECTION
    assert out.loading is False
    assert out.error is None
    assert out.references.authority == "Auth1"
    assert dict(out.tx_signatures) == {"authority": "sig-1"}


def test_success_never_moves_backwards() -> None:
    s = _session(Step.VERIFY, references=References(authority="Auth1", collection="Col1"))
    out = reduce(s, StepSucceeded(Step.CREATE_COLLECTION, Step.CREATE_TREE, References(collection="Col2")))
    assert out.step == Step.VERIFY
    # References still merge in; only the step position is monotonic.
    assert out.references.collection == "Col2"
    assert out.references.authority == "Auth1"


def test_fatal_failure_halts_and_keeps_step() -> None:
    err = LinkageMismatch("tree.delegate", "Auth1", "Other", label="Merkle tree delegate", signature="sig-9")
    s = reduce(_session(Step.CREATE_TREE), StepStarted(Step.CREATE_TREE))
    out = reduce(s, StepFailed(Step.CREATE_TREE, SessionError.from_exception(err)))

    assert out.step == Step.CREATE_TREE
    assert out.halted is True
    assert out.loading is False
    assert out.error is not None
    assert out.error.signature == "sig-9"
    assert out.error.details == {"relation": "tree.delegate", "expected": "Auth1", "actual": "Other"}
    assert out.error.retryable is False


def test_non_fatal_failure_is_retryable_and_does_not_halt() -> None:
    out = reduce(_session(Step.VERIFY), StepFailed(Step.VERIFY, SessionError.from_exception(NetworkError("rpc_unreachable", "down"))))
    assert out.halted is False
    assert out.error is not None and out.error.retryable is True
    assert out.error.kind == "network"


def test_halt_survives_later_failures_until_reset() -> None:
    fatal = SessionError.from_exception(LinkageMismatch("collection.update_authority", "A", "B", label="Collection update authority"))
    s = reduce(_session(Step.CREATE_COLLECTION), StepFailed(Step.CREATE_COLLECTION, fatal))
    s = reduce(s, StepFailed(Step.CREATE_COLLECTION, SessionError.from_exception(NetworkError("x", "y"))))
    assert s.halted is True

    out = reduce(s, Reset())
    assert out == ProvisioningSession(network="devnet")
    assert out.step == Step.NETWORK


def test_network_selection_drops_everything_read_from_the_old_network() -> None:
    s = _session(
        Step.VERIFY,
        references=References(authority="Auth1", collection="Col1", merkle_tree="Tree1"),
        tx_signatures={"authority": "sig-1"},
        network_ready=True,
    )
    out = reduce(s, NetworkSelected("mainnet-beta"))
    assert out.step == Step.CONNECT
    assert out.network == "mainnet-beta"
    assert out.identity is None
    assert out.references == References()
    assert dict(out.tx_signatures) == {}
    assert out.network_ready is False


def test_different_identity_restarts_at_connect() -> None:
    s = _session(Step.CREATE_TREE, references=References(authority="Auth1"))
    out = reduce(s, WalletConnected("OperatorB"))
    assert out.step == Step.CONNECT
    assert out.identity == "OperatorB"
    assert out.references == References()


def test_same_identity_reconnect_keeps_progress() -> None:
    s = reduce(_session(Step.CREATE_TREE, references=References(authority="Auth1")), WalletDisconnected())
    assert s.identity is None
    out = reduce(s, WalletConnected("OperatorA"))
    assert out.step == Step.CREATE_TREE
    assert out.references.authority == "Auth1"


def test_resume_places_session_where_the_ledger_says() -> None:
    s = _session(Step.CONNECT)
    out = reduce(s, Resumed(Step.COMPLETE, References(authority="Auth1", collection="Col1"), config={"verified": True}))
    assert out.step == Step.COMPLETE
    assert out.config == {"verified": True}
    assert out.references.collection == "Col1"


def test_resume_mid_flow_never_moves_backwards() -> None:
    refs = References(authority="Auth1", collection="Col1", merkle_tree="Tree1")
    s = _session(Step.VERIFY, references=refs)

    # The ledger has no linkage yet, so a fresh read places the identity at CreateCollection.
    out = reduce(s, Resumed(Step.CREATE_COLLECTION, References(authority="Auth1")))
    assert out.step == Step.VERIFY
    assert out.references == refs

    out = reduce(s, Resumed(Step.COMPLETE, References(authority="Auth1"), config={"verified": True}))
    assert out.step == Step.COMPLETE
    assert out.config == {"verified": True}


def test_network_checked_only_touches_readiness() -> None:
    s = _session(Step.CREATE_AUTHORITY)
    out = reduce(s, NetworkChecked(True))
    assert out.network_ready is True
    assert out.step == s.step


def test_reducer_returns_new_sessions() -> None:
    s = _session(Step.CREATE_AUTHORITY)
    reduce(s, StepStarted(Step.CREATE_AUTHORITY))
    assert s.loading is False


def test_unknown_event_is_rejected() -> None:
    with pytest.raises(TypeError):
        reduce(_session(Step.CONNECT), object())  # type: ignore[arg-type]
