# src/creatorsetup/submitter.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

from creatorsetup.config import NetworkConfig
from creatorsetup.crypto.keys import Keypair
from creatorsetup.errors import (
    ConfirmFailed,
    ConfirmTimeout,
    NetworkError,
    SignerUnavailable,
    SimulationFailed,
    SubmitFailed,
)
from creatorsetup.ledger.client import LedgerClient, SendTransactionError, SimulationResult
from creatorsetup.logging_utils import log_event
from creatorsetup.tx.transaction import Transaction, signature_from_payload
from creatorsetup.wallet import WalletSession

log = logging.getLogger("creatorsetup.submitter")


class TransactionSubmitter:
    """simulate -> sign -> submit -> confirm, with already-processed recovery.

    The submitter never touches session state. Every failure surfaces as one
    of the distinct SetupError subclasses so callers can render guidance:

      SimulationFailed   ledger dry run rejected; nothing was signed
      SignerUnavailable  no wallet identity / signing capability
      SignRejected       operator declined; nothing was submitted
      SubmitFailed       ledger refused the signed payload
      ConfirmTimeout     status unknown after the polling deadline
      ConfirmFailed      status known, ledger executed and rejected
    """

    def __init__(self, ledger: LedgerClient, *, commitment: str = "confirmed", confirm_timeout_s: float = 60.0) -> None:
        self.ledger = ledger
        self.commitment = commitment
        self.confirm_timeout_s = float(confirm_timeout_s)

    @classmethod
    def from_config(cls, ledger: LedgerClient, cfg: NetworkConfig) -> "TransactionSubmitter":
        return cls(ledger, commitment=cfg.commitment, confirm_timeout_s=cfg.confirm_timeout_s)

    def _prepare(self, tx: Transaction) -> None:
        if not tx.recent_blockhash:
            tx.recent_blockhash = self.ledger.get_latest_blockhash(self.commitment)

    def simulate(self, tx: Transaction, *, hint: str = "Transaction simulation failed") -> SimulationResult:
        """Dry-run the candidate. Raises SimulationFailed carrying the ledger logs verbatim."""
        self._prepare(tx)
        res = self.ledger.simulate_transaction(tx, sig_verify=False, commitment=self.commitment)
        if not res.ok:
            log_event(log, "tx_failed", level=logging.WARNING, stage="simulate", err=res.err, log_lines=len(res.logs))
            raise SimulationFailed(res.err, res.logs, hint=hint)
        log_event(log, "tx_simulated", units_consumed=res.units_consumed, instructions=[ix.name for ix in tx.instructions])
        return res

    def submit_and_confirm(
        self,
        tx: Transaction,
        wallet: WalletSession,
        *,
        extra_signers: Sequence[Keypair] = (),
        hint: str = "Transaction simulation failed",
    ) -> str:
        """Run the full pipeline and return the confirmed transaction signature.

        extra_signers are local single-use keys (e.g. a freshly generated
        resource address) that sign before simulation.
        """
        if wallet.identity is None:
            raise SignerUnavailable()

        self._prepare(tx)
        if extra_signers:
            tx.partial_sign(*extra_signers)

        self.simulate(tx, hint=hint)

        if not wallet.can_sign:
            raise SignerUnavailable()
        signed = wallet.sign_transaction(tx)
        raw = signed.serialize()

        signature = self._send(raw, signed.signature)
        return self._confirm(signature)

    def _send(self, raw: bytes, expected_sig: Optional[str]) -> str:
        try:
            signature = self.ledger.send_raw_transaction(raw, skip_preflight=False)
        except SendTransactionError as e:
            if e.already_processed:
                recovered = signature_from_payload(raw)
                if recovered:
                    log_event(log, "tx_already_processed_recovered", signature=recovered)
                    return recovered
            log_event(log, "tx_failed", level=logging.WARNING, stage="submit", error=e.message, log_lines=len(e.logs))
            raise SubmitFailed(e.message, e.logs) from e
        except NetworkError as e:
            # The payload may have reached the ledger; keep its signature for lookup.
            log_event(log, "tx_failed", level=logging.WARNING, stage="submit", error=e.reason, signature=expected_sig)
            raise SubmitFailed(e.reason, signature=expected_sig) from e

        log_event(log, "tx_submitted", signature=signature)
        return signature or str(expected_sig or "")

    def _confirm(self, signature: str) -> str:
        try:
            status = self.ledger.confirm_transaction(signature, self.commitment, timeout_s=self.confirm_timeout_s)
        except NetworkError as e:
            raise NetworkError(e.code, e.reason, e.details, signature) from e

        if status is None:
            log_event(log, "tx_failed", level=logging.WARNING, stage="confirm", signature=signature, timeout_s=self.confirm_timeout_s)
            raise ConfirmTimeout(signature, self.confirm_timeout_s)

        if status.err is not None:
            err, logs = status.err, []
            try:
                detail = self.ledger.get_transaction(signature)
            except NetworkError:
                detail = None
            if detail is not None:
                err = detail.err if detail.err is not None else err
                logs = detail.logs
            log_event(log, "tx_failed", level=logging.WARNING, stage="confirm", signature=signature, err=err)
            raise ConfirmFailed(err, signature, logs)

        log_event(log, "tx_confirmed", signature=signature, commitment=self.commitment, slot=status.slot)
        return signature
