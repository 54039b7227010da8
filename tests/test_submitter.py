from __future__ import annotations

import pytest

from creatorsetup import programs
from creatorsetup.errors import (
    ConfirmFailed,
    ConfirmTimeout,
    NetworkError,
    SignerUnavailable,
    SignRejected,
    SimulationFailed,
    SubmitFailed,
)
from creatorsetup.ledger.memory import InMemoryLedger
from creatorsetup.ledger.types import AuthorityAccount
from creatorsetup.submitter import TransactionSubmitter
from creatorsetup.testing.keys import deterministic_address, operator_wallet
from creatorsetup.tx.transaction import Transaction
from creatorsetup.wallet import DisconnectedWallet


def _authority_tx(wallet, cfg, *, bps: int = 100) -> Transaction:
    return Transaction(fee_payer=wallet.identity).add(
        programs.create_market_creator(
            program_id=cfg.program_id,
            signer=wallet.identity,
            name="Acme",
            fee_vault=deterministic_address("fee-vault"),
            creator_fee_bps=bps,
        )
    )


def _submitter(ledger, cfg) -> TransactionSubmitter:
    return TransactionSubmitter.from_config(ledger, cfg)


def test_happy_path_returns_confirmed_signature(ledger, cfg) -> None:
    wallet = operator_wallet()
    sig = _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg), wallet)

    assert sig == ledger.sent[-1]
    assert ledger.read(programs.authority_address(wallet.identity, cfg.program_id), AuthorityAccount.KIND) is not None
    # Simulation runs before the send.
    assert ledger.calls.index("simulateTransaction") < ledger.calls.index("sendTransaction")


def test_simulation_failure_never_reaches_the_wallet(ledger, cfg) -> None:
    prompts = []
    wallet = operator_wallet(approve=lambda tx: prompts.append(tx) or True)

    with pytest.raises(SimulationFailed) as ei:
        _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg, bps=5000), wallet)

    e = ei.value
    assert e.err == {"InstructionError": [0, {"Custom": 6000}]}
    assert any("0x1770" in line for line in e.logs)
    assert str(e).startswith("Transaction simulation failed:")
    assert prompts == []
    assert ledger.count("sendTransaction") == 0


def test_simulation_hint_prefixes_the_message(ledger, cfg) -> None:
    wallet = operator_wallet()
    with pytest.raises(SimulationFailed, match="^Collection simulation failed:"):
        _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg, bps=5000), wallet, hint="Collection simulation failed")


def test_rejected_signature_submits_nothing(ledger, cfg) -> None:
    wallet = operator_wallet(approve=lambda tx: False)
    with pytest.raises(SignRejected) as ei:
        _submitter(ledger, cfg).submit_and_confirm(_authority_tx(operator_wallet(), cfg), wallet)
    assert ei.value.retryable is True
    assert ledger.count("simulateTransaction") == 1
    assert ledger.count("sendTransaction") == 0


def test_disconnected_wallet_is_refused_before_simulation(ledger, cfg) -> None:
    tx = _authority_tx(operator_wallet(), cfg)
    with pytest.raises(SignerUnavailable):
        _submitter(ledger, cfg).submit_and_confirm(tx, DisconnectedWallet())
    assert ledger.calls == []


def test_unconfirmed_transaction_times_out_with_signature(ledger, cfg) -> None:
    ledger.drop_confirmations = True
    wallet = operator_wallet()
    with pytest.raises(ConfirmTimeout) as ei:
        _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg), wallet)

    assert ei.value.signature == ledger.sent[-1]
    assert ei.value.kind == "confirmation"
    assert ledger.now >= cfg.confirm_timeout_s


def test_executed_and_rejected_transaction_is_a_confirm_failure(ledger, cfg) -> None:
    ledger.fail_on_chain["create_market_creator"] = {"InstructionError": [0, {"Custom": 6000}]}
    wallet = operator_wallet()
    with pytest.raises(ConfirmFailed) as ei:
        _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg), wallet)

    assert ei.value.signature == ledger.sent[-1]
    assert ei.value.err == {"InstructionError": [0, {"Custom": 6000}]}
    assert ledger.read(programs.authority_address(wallet.identity, cfg.program_id), AuthorityAccount.KIND) is None


def test_already_processed_send_recovers_the_signature(ledger, cfg) -> None:
    ledger.duplicate_send = True
    wallet = operator_wallet()
    sig = _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg), wallet)
    assert sig == ledger.sent[-1]


class _FlakySendLedger(InMemoryLedger):
    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str:
        self._enter("sendTransaction")
        raise NetworkError("rpc_unreachable", "sendTransaction failed: connection reset")


def test_transport_failure_on_send_keeps_the_signature(cfg) -> None:
    ledger = _FlakySendLedger(program_id=cfg.program_id)
    wallet = operator_wallet()
    with pytest.raises(SubmitFailed) as ei:
        _submitter(ledger, cfg).submit_and_confirm(_authority_tx(wallet, cfg), wallet)

    assert ei.value.signature
    assert ei.value.retryable is True
    assert "connection reset" in ei.value.reason


def test_extra_signers_sign_before_simulation(ledger, cfg) -> None:
    from creatorsetup.testing.keys import deterministic_keypair

    wallet = operator_wallet()
    collection = deterministic_keypair("collection")
    tx = Transaction(fee_payer=wallet.identity).add(
        programs.create_collection_v2(
            collection=str(collection.pubkey),
            payer=wallet.identity,
            update_authority=deterministic_address("authority"),
            name="Acme Collection",
            uri="https://example.com/c.json",
        )
    )
    sig = _submitter(ledger, cfg).submit_and_confirm(tx, wallet, extra_signers=(collection,))
    assert sig == ledger.sent[-1]
