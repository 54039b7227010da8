# tests/test_provisioning_flow.py
from __future__ import annotations

from dataclasses import replace

import pytest

from creatorsetup import programs
from creatorsetup.errors import (
    ConfirmFailed,
    ConfirmTimeout,
    CreatedButUnverifiable,
    InvalidTransition,
    LinkageMismatch,
    LocalValidationError,
    NetworkError,
    ResourceMissing,
    StepBusy,
    UnexpectedAccount,
    ValidationMismatch,
)
from creatorsetup.ledger.types import AuthorityAccount, CollectionAccount, MerkleTreeAccount, TreeConfigAccount
from creatorsetup.provisioning.session import Step
from creatorsetup.testing.flows import COLLECTION_URI, new_machine, run_setup, sequential_keys
from creatorsetup.testing.keys import deterministic_address, deterministic_keypair, operator_wallet


def _authority(wallet, cfg) -> str:
    return programs.authority_address(wallet.identity, cfg.program_id)


def test_fresh_session_requires_network_then_connect(machine) -> None:
    assert machine.session.step == Step.NETWORK
    with pytest.raises(InvalidTransition):
        machine.connect()

    machine.select_network("local")
    s = machine.connect()
    assert s.step == Step.CREATE_AUTHORITY
    assert s.references.authority is not None


def test_full_setup_reaches_complete_with_artifact(machine, ledger, wallet, cfg) -> None:
    s = run_setup(machine)
    auth_addr = _authority(wallet, cfg)

    assert s.step == Step.COMPLETE
    assert set(s.tx_signatures) == {"authority", "collection", "tree", "verify"}
    assert s.error is None and s.halted is False

    auth = ledger.read(auth_addr, AuthorityAccount.KIND)
    assert auth.verified is True
    assert auth.core_collection == s.references.collection
    assert auth.merkle_tree == s.references.merkle_tree

    out = machine.exported_config()
    assert out is not None
    assert out["authorityIdentity"] == wallet.identity
    assert out["authorityAddress"] == auth_addr
    assert out["authorityName"] == "Acme Markets"
    assert out["feeRecipient"] == deterministic_address("fee-vault")
    assert out["feeRateBps"] == 100
    assert out["collectionAddress"] == s.references.collection
    assert out["collectionName"] == "Acme Markets Collection"
    assert out["collectionUri"] == COLLECTION_URI
    assert out["treeAddress"] == s.references.merkle_tree
    assert out["verified"] is True
    assert out["network"] == "devnet"
    assert out["rpcEndpoint"] == "memory://local"
    assert out["protocolId"] == cfg.program_id

    tc = out["treeConfig"]
    assert tc["maxDepth"] == 16
    assert tc["canopyDepth"] == 10
    assert tc["concurrencyBuffer"] == 64
    assert tc["totalCapacity"] == 65536
    assert tc["numFilled"] == 0
    assert tc["delegate"] == auth_addr


def test_exported_config_is_absent_until_complete(machine) -> None:
    run_setup(machine, until=Step.VERIFY)
    assert machine.session.step == Step.VERIFY
    assert machine.exported_config() is None


def test_resume_of_provisioned_authority_goes_straight_to_complete(ledger, wallet, cfg) -> None:
    run_setup(new_machine(ledger, wallet, cfg))
    sent_before = list(ledger.sent)

    fresh = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("second"))
    fresh.select_network(cfg.network)
    s = fresh.connect()

    assert s.step == Step.COMPLETE
    assert ledger.sent == sent_before
    assert fresh.exported_config()["verified"] is True
    assert fresh.exported_config()["collectionName"] == "Acme Markets Collection"


def test_resume_with_authority_only_lands_on_collection_step(ledger, wallet, cfg) -> None:
    run_setup(new_machine(ledger, wallet, cfg), until=Step.CREATE_COLLECTION)

    fresh = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("second"))
    fresh.select_network(cfg.network)
    s = fresh.connect()
    assert s.step == Step.CREATE_COLLECTION
    assert s.references.authority == _authority(wallet, cfg)


def test_unverified_resources_are_orphaned_on_resume(ledger, wallet, cfg) -> None:
    first = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("first"))
    run_setup(first, until=Step.VERIFY)
    orphan = first.session.references.collection

    # Linkage is only written by Verify, so the ledger does not know about `orphan`.
    second = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("second"))
    second.select_network(cfg.network)
    assert second.connect().step == Step.CREATE_COLLECTION

    s = run_setup(second)
    assert s.step == Step.COMPLETE
    assert s.references.collection != orphan
    assert ledger.read(orphan, CollectionAccount.KIND) is not None


def test_reconnecting_mid_flow_keeps_the_session_position(machine, ledger) -> None:
    s = run_setup(machine, until=Step.VERIFY)
    refs = s.references
    sends = ledger.count("sendTransaction")

    s = machine.connect()
    assert s.step == Step.VERIFY
    assert s.references == refs
    assert ledger.count("sendTransaction") == sends
    assert machine.verify().step == Step.VALIDATE


def test_step_in_flight_rejects_a_second_invocation(ledger, cfg) -> None:
    holder = {}

    def approve(tx) -> bool:
        m = holder["m"]
        assert m.busy is True
        assert m.session.loading is True
        with pytest.raises(StepBusy):
            m.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
        holder["checked"] = True
        return True

    holder["m"] = m = new_machine(ledger, operator_wallet(approve=approve), cfg)
    run_setup(m, until=Step.CREATE_AUTHORITY)
    sends = ledger.count("sendTransaction")

    s = m.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert holder["checked"] is True
    assert ledger.count("sendTransaction") == sends + 1
    assert s.step == Step.CREATE_COLLECTION
    assert s.error is None
    assert m.busy is False


def test_create_authority_is_skipped_when_it_already_exists(ledger, wallet, cfg) -> None:
    late = new_machine(ledger, wallet, cfg, key_factory=sequential_keys("late"))
    run_setup(late, until=Step.CREATE_AUTHORITY)
    assert late.session.step == Step.CREATE_AUTHORITY

    # Another session creates the authority after `late` connected.
    run_setup(new_machine(ledger, wallet, cfg), until=Step.CREATE_COLLECTION)
    sends = ledger.count("sendTransaction")

    s = late.create_authority(name="Acme Markets", fee_vault=deterministic_address("fee-vault"), fee_percent=1.0)
    assert s.step == Step.CREATE_COLLECTION
    assert ledger.count("sendTransaction") == sends
    assert "authority" not in s.tx_signatures


def test_repeating_a_completed_step_does_not_submit(machine, ledger) -> None:
    run_setup(machine)
    sends = ledger.count("sendTransaction")

    s = machine.create_collection(uri=COLLECTION_URI)
    assert s.step == Step.COMPLETE
    s = machine.create_tree()
    assert s.step == Step.COMPLETE
    s = machine.verify()
    assert s.step == Step.COMPLETE
    assert ledger.count("sendTransaction") == sends


def test_create_tree_uses_selected_preset(machine, ledger) -> None:
    run_setup(machine, until=Step.VERIFY, preset_id="16384")
    tree = machine.session.references.merkle_tree

    mt = ledger.read(tree, MerkleTreeAccount.KIND)
    assert (mt.max_depth, mt.canopy_depth, mt.max_buffer_size) == (14, 8, 64)
    tc = ledger.read(programs.tree_config_address(tree), TreeConfigAccount.KIND)
    assert tc.total_mint_capacity == 16384


def test_default_preset_is_65536(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_TREE)
    machine.create_tree()
    tc = ledger.read(programs.tree_config_address(machine.session.references.merkle_tree), TreeConfigAccount.KIND)
    assert tc.total_mint_capacity == 65536


def test_unknown_preset_is_rejected_before_any_submission(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_TREE)
    sends = ledger.count("sendTransaction")
    with pytest.raises(LocalValidationError, match="Please select a tree size option"):
        machine.create_tree(preset_id="123")
    assert ledger.count("sendTransaction") == sends
    assert machine.session.error.code == "invalid_preset"


def test_tree_delegate_mismatch_is_fatal(machine, wallet, cfg, monkeypatch: pytest.MonkeyPatch) -> None:
    run_setup(machine, until=Step.CREATE_TREE)
    intruder = deterministic_address("intruder")
    real = programs.set_tree_delegate
    monkeypatch.setattr(programs, "set_tree_delegate", lambda **kw: real(**{**kw, "new_tree_delegate": intruder}))

    with pytest.raises(LinkageMismatch) as ei:
        machine.create_tree(preset_id="65536")

    e = ei.value
    auth_addr = _authority(wallet, cfg)
    assert e.relation == "tree.delegate"
    assert (e.expected, e.actual) == (auth_addr, intruder)
    assert e.signature
    assert str(e).startswith(f"Merkle tree delegate mismatch. Expected {auth_addr} but found {intruder}.")

    s = machine.session
    assert s.halted is True
    assert s.step == Step.CREATE_TREE
    assert s.error.signature == e.signature

    with pytest.raises(InvalidTransition):
        machine.create_tree(preset_id="65536")
    assert machine.reset().halted is False


def test_collection_update_authority_mismatch_is_fatal(machine, wallet, cfg, monkeypatch: pytest.MonkeyPatch) -> None:
    run_setup(machine, until=Step.CREATE_COLLECTION)
    intruder = deterministic_address("intruder")
    real = programs.create_collection_v2
    monkeypatch.setattr(programs, "create_collection_v2", lambda **kw: real(**{**kw, "update_authority": intruder}))

    with pytest.raises(LinkageMismatch) as ei:
        machine.create_collection(uri=COLLECTION_URI)

    e = ei.value
    auth_addr = _authority(wallet, cfg)
    assert e.relation == "collection.update_authority"
    assert (e.expected, e.actual) == (auth_addr, intruder)
    assert e.signature

    s = machine.session
    assert s.halted is True
    assert s.step == Step.CREATE_COLLECTION
    assert s.error.code == "linkage_mismatch"
    assert s.error.retryable is False
    with pytest.raises(InvalidTransition):
        machine.create_collection(uri=COLLECTION_URI)


def test_created_but_unreadable_collection_carries_signature(ledger, cfg) -> None:
    collection = str(deterministic_keypair("col-1").pubkey)
    armed = {"on": False}

    def approve(tx) -> bool:
        if armed["on"]:
            ledger.unreadable.add(collection)
        return True

    m = new_machine(ledger, operator_wallet(approve=approve), cfg, key_factory=sequential_keys("col"))
    run_setup(m, until=Step.CREATE_COLLECTION)
    armed["on"] = True

    with pytest.raises(CreatedButUnverifiable) as ei:
        m.create_collection(uri=COLLECTION_URI)
    assert ei.value.signature == ledger.sent[-1]
    assert ei.value.details == {"resource": "Collection", "address": collection}
    assert m.session.step == Step.CREATE_COLLECTION
    assert m.session.halted is False
    assert m.session.error.signature == ledger.sent[-1]


def test_collection_defaults_and_required_fields(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_COLLECTION)
    assert machine.form.collection_name == "Acme Markets Collection"

    sends = ledger.count("sendTransaction")
    with pytest.raises(LocalValidationError, match="Collection metadata URI is required"):
        machine.create_collection()
    with pytest.raises(LocalValidationError, match="Collection name is required"):
        machine.create_collection(name="   ", uri=COLLECTION_URI)
    assert ledger.count("sendTransaction") == sends


def test_authority_input_validation(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_AUTHORITY)
    vault = deterministic_address("fee-vault")

    with pytest.raises(LocalValidationError, match="Market creator name is required"):
        machine.create_authority(name=" ", fee_vault=vault, fee_percent=1)
    with pytest.raises(LocalValidationError, match="Invalid fee vault address"):
        machine.create_authority(name="Acme", fee_vault="not-an-address", fee_percent=1)

    assert ledger.count("simulateTransaction") == 0
    assert machine.session.step == Step.CREATE_AUTHORITY
    assert machine.session.error.kind == "local_validation"


def test_program_missing_on_network(ledger, wallet, cfg) -> None:
    from creatorsetup.ledger.memory import InMemoryLedger

    bare = InMemoryLedger(program_id=cfg.program_id, deploy_program=False)
    m = new_machine(bare, wallet, cfg)
    run_setup(m, until=Step.CREATE_AUTHORITY)

    with pytest.raises(LocalValidationError) as ei:
        m.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert ei.value.code == "program_not_found"
    assert str(ei.value) == "Program not found on Devnet. Please switch your wallet RPC to Devnet or select a different network."
    assert m.session.network_ready is False


def test_network_check_failure_is_retryable(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_AUTHORITY)
    ledger.offline = True
    with pytest.raises(NetworkError) as ei:
        machine.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert ei.value.code == "network_check_failed"
    assert str(ei.value).startswith("Network check failed:")
    assert machine.session.error.retryable is True

    ledger.offline = False
    s = machine.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert s.step == Step.CREATE_COLLECTION


def test_confirm_timeout_then_retry_finds_the_landed_authority(machine, ledger) -> None:
    run_setup(machine, until=Step.CREATE_AUTHORITY)
    ledger.drop_confirmations = True
    with pytest.raises(ConfirmTimeout) as ei:
        machine.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert ei.value.signature == ledger.sent[-1]
    assert machine.session.error.kind == "confirmation"
    assert machine.session.error.retryable is True

    ledger.drop_confirmations = False
    sends = ledger.count("sendTransaction")
    s = machine.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert s.step == Step.CREATE_COLLECTION
    assert ledger.count("sendTransaction") == sends


def test_created_but_unreadable_authority_carries_signature(ledger, cfg) -> None:
    holder = {}

    def approve(tx) -> bool:
        # The read-back after confirmation fails; the existence check before it did not.
        ledger.unreadable.add(holder["auth"])
        return True

    wallet = operator_wallet(approve=approve)
    holder["auth"] = programs.authority_address(wallet.identity, cfg.program_id)
    m = new_machine(ledger, wallet, cfg)
    run_setup(m, until=Step.CREATE_AUTHORITY)

    with pytest.raises(CreatedButUnverifiable) as ei:
        m.create_authority(name="Acme", fee_vault=deterministic_address("fee-vault"), fee_percent=1)
    assert ei.value.signature == ledger.sent[-1]
    assert m.session.error.code == "created_but_unverifiable"
    assert m.session.error.signature == ledger.sent[-1]


def test_verify_confirmed_failure_then_retry(machine, ledger) -> None:
    run_setup(machine, until=Step.VERIFY)
    ledger.fail_on_chain["verify_market_creator"] = {"InstructionError": [0, {"Custom": 6002}]}

    with pytest.raises(ConfirmFailed) as ei:
        machine.verify()
    assert ei.value.signature == ledger.sent[-1]
    assert any("injected failure" in line for line in ei.value.logs)
    assert machine.session.step == Step.VERIFY
    assert machine.session.halted is False

    ledger.fail_on_chain.clear()
    assert machine.verify().step == Step.VALIDATE


def test_verify_precheck_reports_missing_collection(machine, ledger) -> None:
    run_setup(machine, until=Step.VERIFY)
    collection = machine.session.references.collection
    ledger.remove_account(collection)
    sends = ledger.count("sendTransaction")

    with pytest.raises(ResourceMissing) as ei:
        machine.verify()
    assert str(ei.value) == (
        f"Collection account {collection} does not exist or is empty. Please ensure the collection was created."
    )
    assert ledger.count("sendTransaction") == sends


def test_validate_reports_expected_and_actual_and_halts(machine, ledger, wallet, cfg) -> None:
    run_setup(machine, until=Step.VALIDATE)
    auth_addr = _authority(wallet, cfg)
    col = ledger.read(machine.session.references.collection, CollectionAccount.KIND)
    intruder = deterministic_address("intruder")
    ledger.put_record(replace(col, update_authority=intruder), owner=programs.MPL_CORE_PROGRAM_ID)
    sends = ledger.count("sendTransaction")

    with pytest.raises(ValidationMismatch) as ei:
        machine.validate()

    e = ei.value
    assert e.relation == "collection.update_authority"
    assert (e.expected, e.actual) == (auth_addr, intruder)
    assert str(e) == f"Collection update authority mismatch. Expected {auth_addr} but found {intruder}."
    assert ledger.count("sendTransaction") == sends

    s = machine.session
    assert s.halted is True
    assert s.step == Step.VALIDATE
    assert s.error.code == "validation_mismatch"
    assert s.error.kind == "validation"
    assert s.error.details == {"relation": "collection.update_authority", "expected": auth_addr, "actual": intruder}

    with pytest.raises(InvalidTransition):
        machine.validate()

    s = machine.reset()
    assert s.step == Step.NETWORK
    assert s.halted is False


def test_validate_checks_tree_delegate(machine, ledger, wallet, cfg) -> None:
    run_setup(machine, until=Step.VALIDATE)
    tc_addr = programs.tree_config_address(machine.session.references.merkle_tree)
    tc = ledger.read(tc_addr, TreeConfigAccount.KIND)
    ledger.put_record(replace(tc, tree_delegate=deterministic_address("intruder")), owner=programs.BUBBLEGUM_PROGRAM_ID)

    with pytest.raises(ValidationMismatch) as ei:
        machine.validate()
    assert ei.value.relation == "tree.delegate"
    assert ei.value.expected == _authority(wallet, cfg)


def test_validate_rejects_a_wrong_kind_of_account_as_fatal(machine, ledger) -> None:
    run_setup(machine, until=Step.VALIDATE)
    collection = machine.session.references.collection
    tc = ledger.read(programs.tree_config_address(machine.session.references.merkle_tree), TreeConfigAccount.KIND)
    ledger.put_record(replace(tc, address=collection), owner=programs.BUBBLEGUM_PROGRAM_ID)

    with pytest.raises(UnexpectedAccount) as ei:
        machine.validate()
    assert ei.value.address == collection
    assert ei.value.retryable is False

    s = machine.session
    assert s.halted is True
    assert s.error.code == "unexpected_account"
    assert s.error.kind == "validation"
    with pytest.raises(InvalidTransition):
        machine.validate()


def test_validate_read_failure_stays_retryable(machine, ledger) -> None:
    run_setup(machine, until=Step.VALIDATE)
    ledger.unreadable.add(machine.session.references.collection)

    with pytest.raises(NetworkError) as ei:
        machine.validate()
    assert ei.value.code == "collection_read_failed"
    assert machine.session.halted is False
    assert machine.session.error.retryable is True

    ledger.unreadable.clear()
    assert machine.validate().step == Step.COMPLETE


def test_verify_checks_linkage_before_submitting(machine, ledger, wallet, cfg) -> None:
    run_setup(machine, until=Step.VERIFY)
    col = ledger.read(machine.session.references.collection, CollectionAccount.KIND)
    intruder = deterministic_address("intruder")
    ledger.put_record(replace(col, update_authority=intruder), owner=programs.MPL_CORE_PROGRAM_ID)
    sims = ledger.count("simulateTransaction")

    with pytest.raises(ValidationMismatch) as ei:
        machine.verify()
    assert ei.value.relation == "collection.update_authority"
    assert (ei.value.expected, ei.value.actual) == (_authority(wallet, cfg), intruder)
    assert ledger.count("simulateTransaction") == sims
    assert machine.session.halted is True


def test_fee_percent_round_trips_through_the_artifact(machine) -> None:
    run_setup(machine, fee_percent=0.5)
    out = machine.exported_config()
    assert out["feeRateBps"] == 50
    assert out["feeRatePercent"] == 0.5


def test_select_network_disconnects_and_restarts(machine, wallet) -> None:
    run_setup(machine, until=Step.CREATE_COLLECTION)
    s = machine.select_network("devnet")
    assert s.step == Step.CONNECT
    assert s.network == "devnet"
    assert wallet.identity is None
    assert machine.form.name == ""
