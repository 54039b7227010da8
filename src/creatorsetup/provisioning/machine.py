# src/creatorsetup/provisioning/machine.py
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from creatorsetup import programs as P
from creatorsetup.config import NetworkConfig
from creatorsetup.crypto.keys import Keypair, is_default_address, parse_address
from creatorsetup.errors import (
    CreatedButUnverifiable,
    InvalidTransition,
    LinkageMismatch,
    LocalValidationError,
    NetworkError,
    ResourceMissing,
    SetupError,
    SignerUnavailable,
    StepBusy,
    UnexpectedAccount,
    ValidationMismatch,
    VerificationIncomplete,
)
from creatorsetup.export import ConfigExporter
from creatorsetup.ledger.client import LedgerClient
from creatorsetup.ledger.types import AccountDecodeError, AuthorityAccount, CollectionAccount, TreeConfigAccount
from creatorsetup.logging_utils import log_event
from creatorsetup.presets import TreePreset, default_preset, get_preset
from creatorsetup.provisioning.session import (
    SIG_AUTHORITY,
    SIG_COLLECTION,
    SIG_TREE,
    SIG_VERIFY,
    Event,
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
from creatorsetup.submitter import TransactionSubmitter
from creatorsetup.tx.transaction import Transaction
from creatorsetup.verifier import ResourceVerifier, Violation
from creatorsetup.wallet import WalletSession

log = logging.getLogger("creatorsetup.provisioning")

LedgerFactory = Callable[[NetworkConfig], LedgerClient]


def fee_percent_to_bps(percent: float) -> int:
    """Percent -> basis points, rounding halves up (0.5% -> 50, 0.125% -> 13)."""
    return int(math.floor(float(percent) * 100 + 0.5))


@dataclass(frozen=True)
class SetupForm:
    """Operator input carried across steps; used as fallback when building the artifact."""

    name: str = ""
    fee_vault: str = ""
    fee_percent: float = 1.0
    collection_name: str = ""
    collection_uri: str = ""
    preset_id: str = default_preset().id


class ProvisioningStateMachine:
    """Resumable 8-step wizard provisioning an operator's authority.

    Every public step:
      - refuses to run while another step is in flight (StepBusy)
      - refuses to run after a fatal mismatch until reset() (InvalidTransition)
      - records failures on the session and re-raises them

    Ledger reads decide what each step does; the session only remembers what
    has been read or created so far.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: WalletSession,
        cfg: NetworkConfig,
        *,
        ledger_factory: Optional[LedgerFactory] = None,
        verifier: Optional[ResourceVerifier] = None,
        key_factory: Callable[[], Keypair] = Keypair.generate,
    ) -> None:
        self.ledger = ledger
        self.wallet = wallet
        self.cfg = cfg
        self.verifier = verifier or ResourceVerifier()
        self.form = SetupForm()
        self._ledger_factory = ledger_factory
        self._key_factory = key_factory
        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._session = ProvisioningSession(network=cfg.network)
        self.submitter = TransactionSubmitter.from_config(ledger, cfg)

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------

    @property
    def session(self) -> ProvisioningSession:
        return self._session

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def _dispatch(self, event: Event) -> ProvisioningSession:
        with self._state_lock:
            self._session = reduce(self._session, event)
            return self._session

    @property
    def authority_address(self) -> str:
        identity = self._require_identity()
        return P.authority_address(identity, self.cfg.program_id)

    def _require_identity(self) -> str:
        identity = self.wallet.identity
        if identity is None:
            raise SignerUnavailable("Wallet not connected")
        return identity

    def _run(self, step: Step, body: Callable[[], StepSucceeded], *, minimum: Step) -> ProvisioningSession:
        if not self._busy.acquire(blocking=False):
            raise StepBusy(step.value)
        try:
            s = self._session
            if s.halted:
                raise InvalidTransition(s.step.value, step.value, "Session halted after a linkage mismatch; reset to start over")
            if s.step.order < minimum.order:
                raise InvalidTransition(s.step.value, step.value)

            self._dispatch(StepStarted(step))
            log_event(log, "step_started", step=step.value, network=self.cfg.network)
            try:
                result = body()
            except SetupError as e:
                self._dispatch(StepFailed(step, SessionError.from_exception(e)))
                log_event(log, "step_failed", level=logging.WARNING, step=step.value, code=e.code, kind=e.kind, signature=e.signature)
                raise
            session = self._dispatch(result)
            log_event(log, "step_advanced", step=step.value, next=session.step.value, signature=result.signature)
            return session
        finally:
            self._busy.release()

    # ------------------------------------------------------------------
    # Network / Connect / Reset
    # ------------------------------------------------------------------

    def select_network(self, network: str) -> ProvisioningSession:
        """Switch networks: session restarts at Connect and the wallet is disconnected."""
        if not self._busy.acquire(blocking=False):
            raise StepBusy(Step.NETWORK.value)
        try:
            cfg = self.cfg.with_network(network)
            if cfg.network != self.cfg.network and self._ledger_factory is not None:
                self.ledger = self._ledger_factory(cfg)
            self.cfg = cfg
            self.submitter = TransactionSubmitter.from_config(self.ledger, cfg)
            _disconnect(self.wallet)
            self.form = SetupForm()
            return self._dispatch(NetworkSelected(cfg.network))
        finally:
            self._busy.release()

    def reset(self) -> ProvisioningSession:
        """Change network: back to the Network step, clearing any halt."""
        if not self._busy.acquire(blocking=False):
            raise StepBusy(Step.NETWORK.value)
        try:
            _disconnect(self.wallet)
            self.form = SetupForm()
            return self._dispatch(Reset())
        finally:
            self._busy.release()

    def check_network(self) -> bool:
        """The protocol program must be deployed on the selected network."""
        try:
            info = self.ledger.get_account_info(self.cfg.program_id)
        except NetworkError as e:
            self._dispatch(NetworkChecked(False))
            raise NetworkError("network_check_failed", f"Network check failed: {e.reason}") from e
        if info is None:
            self._dispatch(NetworkChecked(False))
            label = self.cfg.label
            raise LocalValidationError(
                "program_not_found",
                f"Program not found on {label}. Please switch your wallet RPC to {label} or select a different network.",
                {"program_id": self.cfg.program_id, "network": self.cfg.network},
            )
        self._dispatch(NetworkChecked(True))
        return True

    def connect(self) -> ProvisioningSession:
        def body() -> StepSucceeded:
            _reconnect(self.wallet)
            identity = self._require_identity()
            self._dispatch(WalletConnected(identity))
            step, refs, config = self._resume_position(identity)
            self._dispatch(Resumed(step, refs, config))
            log_event(log, "session_resumed", identity=identity, step=step.value, network=self.cfg.network)
            return StepSucceeded(Step.CONNECT, step)

        return self._run(Step.CONNECT, body, minimum=Step.CONNECT)

    def disconnect(self) -> ProvisioningSession:
        _disconnect(self.wallet)
        return self._dispatch(WalletDisconnected())

    def _resume_position(self, identity: str) -> Tuple[Step, References, Optional[dict]]:
        addr = P.authority_address(identity, self.cfg.program_id)
        auth = self._read_authority(addr)
        if auth is None:
            return Step.CREATE_AUTHORITY, References(authority=addr), None

        refs = References(
            authority=addr,
            collection=None if not auth.has_collection else auth.core_collection,
            merkle_tree=None if not auth.has_tree else auth.merkle_tree,
            tree_config=None if not auth.has_tree else P.tree_config_address(auth.merkle_tree),
        )
        if not auth.has_collection:
            return Step.CREATE_COLLECTION, refs, None
        if not auth.has_tree:
            return Step.CREATE_TREE, refs, None
        if not auth.verified:
            return Step.VERIFY, refs, None
        return Step.COMPLETE, refs, self._exporter().build(auth, identity, **self._form_fallbacks())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read_authority(self, address: str) -> Optional[AuthorityAccount]:
        try:
            return self.ledger.decode(address, AuthorityAccount.KIND)
        except AccountDecodeError as e:
            raise LocalValidationError("authority_undecodable", f"Market creator account is not decodable: {e}") from e

    def _require_authority(self) -> AuthorityAccount:
        auth = self._read_authority(self.authority_address)
        if auth is None:
            raise ResourceMissing("authority", self.authority_address, "Market creator account not found. Please create it first.")
        return auth

    def _read_linked(self, address: str, schema: str, resource: str, read_code: str, read_msg: str):
        """Read an account the authority links to. A different kind of account at that address is fatal."""
        try:
            return self.ledger.decode(address, schema)
        except NetworkError as e:
            raise NetworkError(read_code, f"{read_msg}: {e.reason}") from e
        except AccountDecodeError as e:
            raise UnexpectedAccount(resource, address, str(e)) from e

    def _exporter(self) -> ConfigExporter:
        return ConfigExporter(self.ledger, self.cfg)

    def _form_fallbacks(self) -> dict:
        return {
            "collection_name": self.form.collection_name,
            "collection_uri": self.form.collection_uri,
            "preset": get_preset(self.form.preset_id),
        }

    # ------------------------------------------------------------------
    # CreateAuthority
    # ------------------------------------------------------------------

    def create_authority(self, *, name: str, fee_vault: str, fee_percent: float) -> ProvisioningSession:
        def body() -> StepSucceeded:
            identity = self._require_identity()
            clean_name = (name or "").strip()
            if not clean_name:
                raise LocalValidationError("invalid_name", "Market creator name is required")
            if parse_address(fee_vault) is None:
                raise LocalValidationError("invalid_fee_vault", "Invalid fee vault address")
            try:
                bps = fee_percent_to_bps(float(fee_percent))
            except (TypeError, ValueError, OverflowError) as e:
                raise LocalValidationError("invalid_fee", "Creator fee must be a number") from e
            if bps < 0 or bps > P.MAX_FEE_BPS:
                raise LocalValidationError("invalid_fee", "Creator fee must be between 0% and 20%", {"creator_fee_bps": bps})

            self.form = replace(self.form, name=clean_name, fee_vault=fee_vault.strip(), fee_percent=float(fee_percent))
            if not self.form.collection_name:
                self.form = replace(self.form, collection_name=f"{clean_name} Collection")

            self.check_network()
            addr = P.authority_address(identity, self.cfg.program_id)
            if self._read_authority(addr) is not None:
                return StepSucceeded(Step.CREATE_AUTHORITY, Step.CREATE_COLLECTION, References(authority=addr))

            tx = Transaction(fee_payer=identity).add(
                P.create_market_creator(
                    program_id=self.cfg.program_id,
                    signer=identity,
                    name=clean_name,
                    fee_vault=fee_vault.strip(),
                    creator_fee_bps=bps,
                )
            )
            sig = self.submitter.submit_and_confirm(tx, self.wallet)

            try:
                created = self._read_authority(addr)
            except NetworkError as e:
                raise CreatedButUnverifiable("Market creator", addr, e.reason, sig) from e
            if created is None:
                raise CreatedButUnverifiable("Market creator", addr, "account not found after creation", sig)
            return StepSucceeded(Step.CREATE_AUTHORITY, Step.CREATE_COLLECTION, References(authority=addr), SIG_AUTHORITY, sig)

        return self._run(Step.CREATE_AUTHORITY, body, minimum=Step.CREATE_AUTHORITY)

    # ------------------------------------------------------------------
    # CreateCollection
    # ------------------------------------------------------------------

    def create_collection(self, *, name: Optional[str] = None, uri: Optional[str] = None) -> ProvisioningSession:
        def body() -> StepSucceeded:
            identity = self._require_identity()
            if name is not None:
                self.form = replace(self.form, collection_name=name.strip())
            if uri is not None:
                self.form = replace(self.form, collection_uri=uri.strip())
            if not self.form.collection_name:
                raise LocalValidationError("invalid_collection_name", "Collection name is required")
            if not self.form.collection_uri:
                raise LocalValidationError("invalid_collection_uri", "Collection metadata URI is required")

            self.check_network()
            auth = self._require_authority()
            if auth.has_collection:
                return StepSucceeded(Step.CREATE_COLLECTION, Step.CREATE_TREE, References(authority=auth.address, collection=auth.core_collection))

            # A collection created earlier in this session that still reads back correctly is reused.
            prior = self._session.references.collection
            if prior:
                col = self._read_collection(prior)
                if col is not None and self.verifier.check_collection(auth.address, col).ok:
                    return StepSucceeded(Step.CREATE_COLLECTION, Step.CREATE_TREE, References(collection=prior))

            collection_key = self._key_factory()
            collection = str(collection_key.pubkey)
            tx = Transaction(fee_payer=identity).add(
                P.create_collection_v2(
                    collection=collection,
                    payer=identity,
                    update_authority=auth.address,
                    name=self.form.collection_name,
                    uri=self.form.collection_uri,
                )
            )
            sig = self.submitter.submit_and_confirm(tx, self.wallet, extra_signers=(collection_key,), hint="Collection simulation failed")
            del collection_key

            try:
                col = self.ledger.decode(collection, CollectionAccount.KIND)
            except (NetworkError, AccountDecodeError) as e:
                raise CreatedButUnverifiable("Collection", collection, str(e), sig) from e
            if col is None:
                raise CreatedButUnverifiable("Collection", collection, "account not found", sig)
            verdict = self.verifier.check_collection(auth.address, col)
            if isinstance(verdict, Violation):
                raise LinkageMismatch(verdict.relation, verdict.expected, verdict.actual, label=verdict.label, signature=sig)
            return StepSucceeded(Step.CREATE_COLLECTION, Step.CREATE_TREE, References(collection=collection), SIG_COLLECTION, sig)

        return self._run(Step.CREATE_COLLECTION, body, minimum=Step.CREATE_COLLECTION)

    def _read_collection(self, address: str) -> Optional[CollectionAccount]:
        try:
            return self.ledger.decode(address, CollectionAccount.KIND)
        except AccountDecodeError:
            return None

    # ------------------------------------------------------------------
    # CreateTree
    # ------------------------------------------------------------------

    def create_tree(self, *, preset_id: Optional[str] = None) -> ProvisioningSession:
        def body() -> StepSucceeded:
            identity = self._require_identity()
            preset: Optional[TreePreset] = get_preset(preset_id or self.form.preset_id)
            if preset is None:
                raise LocalValidationError("invalid_preset", "Please select a tree size option", {"preset_id": preset_id})
            self.form = replace(self.form, preset_id=preset.id)

            self.check_network()
            auth = self._require_authority()
            if auth.has_tree:
                return StepSucceeded(
                    Step.CREATE_TREE,
                    Step.VERIFY,
                    References(merkle_tree=auth.merkle_tree, tree_config=P.tree_config_address(auth.merkle_tree)),
                )

            prior = self._session.references.merkle_tree
            if prior:
                tc = self._read_tree_config(P.tree_config_address(prior))
                if tc is not None and self.verifier.check_tree(auth.address, tc).ok:
                    return StepSucceeded(Step.CREATE_TREE, Step.VERIFY, References(merkle_tree=prior, tree_config=tc.address))

            tree_key = self._key_factory()
            merkle_tree = str(tree_key.pubkey)
            tx = Transaction(fee_payer=identity).add(
                P.create_tree_v2(
                    merkle_tree=merkle_tree,
                    payer=identity,
                    max_depth=preset.max_depth,
                    max_buffer_size=preset.concurrency_buffer,
                    canopy_depth=preset.canopy_depth,
                    public=False,
                ),
                P.set_tree_delegate(merkle_tree=merkle_tree, tree_creator=identity, new_tree_delegate=auth.address),
            )
            sig = self.submitter.submit_and_confirm(tx, self.wallet, extra_signers=(tree_key,), hint="Tree simulation failed")
            del tree_key

            cfg_addr = P.tree_config_address(merkle_tree)
            try:
                tc = self.ledger.decode(cfg_addr, TreeConfigAccount.KIND)
            except (NetworkError, AccountDecodeError) as e:
                raise CreatedButUnverifiable("Merkle tree", merkle_tree, str(e), sig) from e
            if tc is None:
                raise CreatedButUnverifiable("Merkle tree", merkle_tree, "tree config not found", sig)
            verdict = self.verifier.check_tree(auth.address, tc)
            if isinstance(verdict, Violation):
                raise LinkageMismatch(verdict.relation, verdict.expected, verdict.actual, label=verdict.label, signature=sig)
            return StepSucceeded(
                Step.CREATE_TREE,
                Step.VERIFY,
                References(merkle_tree=merkle_tree, tree_config=cfg_addr),
                SIG_TREE,
                sig,
            )

        return self._run(Step.CREATE_TREE, body, minimum=Step.CREATE_TREE)

    def _read_tree_config(self, address: str) -> Optional[TreeConfigAccount]:
        try:
            return self.ledger.decode(address, TreeConfigAccount.KIND)
        except AccountDecodeError:
            return None

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self) -> ProvisioningSession:
        def body() -> StepSucceeded:
            identity = self._require_identity()
            self.check_network()
            auth = self._require_authority()
            if auth.verified:
                return StepSucceeded(Step.VERIFY, Step.VALIDATE, References(collection=auth.core_collection, merkle_tree=auth.merkle_tree))

            refs = self._session.references
            collection = refs.collection or (auth.core_collection if auth.has_collection else None)
            merkle_tree = refs.merkle_tree or (auth.merkle_tree if auth.has_tree else None)
            if not collection or not merkle_tree:
                raise ResourceMissing("references", auth.address, "Missing required accounts: create the collection and merkle tree first")

            try:
                col_info = self.ledger.get_account_info(collection)
            except NetworkError as e:
                raise NetworkError("collection_read_failed", f"Failed to verify collection account: {e.reason}") from e
            if col_info is None or not col_info.data:
                raise ResourceMissing(
                    "collection",
                    collection,
                    f"Collection account {collection} does not exist or is empty. Please ensure the collection was created.",
                )
            try:
                tree_info = self.ledger.get_account_info(merkle_tree)
            except NetworkError as e:
                raise NetworkError("tree_read_failed", f"Failed to verify merkle tree account: {e.reason}") from e
            if tree_info is None:
                raise ResourceMissing(
                    "merkle_tree",
                    merkle_tree,
                    f"Merkle tree account {merkle_tree} does not exist. Please ensure the tree was created.",
                )

            col = self._read_linked(
                collection, CollectionAccount.KIND, "Collection", "collection_read_failed", "Failed to verify collection account"
            )
            tc_addr = P.tree_config_address(merkle_tree)
            tc = self._read_linked(
                tc_addr, TreeConfigAccount.KIND, "Tree config", "tree_read_failed", "Failed to verify merkle tree config"
            )
            if tc is None:
                raise ResourceMissing(
                    "tree_config",
                    tc_addr,
                    f"Merkle tree config for {merkle_tree} does not exist. Please ensure the tree was created.",
                )
            verdict = self.verifier.verify(auth.address, col, tc)
            if isinstance(verdict, Violation):
                raise ValidationMismatch(verdict.relation, verdict.expected, verdict.actual, label=verdict.label)

            tx = Transaction(fee_payer=identity).add(
                P.verify_market_creator(
                    program_id=self.cfg.program_id,
                    signer=identity,
                    core_collection=collection,
                    merkle_tree=merkle_tree,
                )
            )
            sig = self.submitter.submit_and_confirm(
                tx,
                self.wallet,
                hint="Transaction simulation failed; check the collection and tree addresses",
            )

            updated = self._read_authority(auth.address)
            if updated is None or not updated.verified:
                raise VerificationIncomplete(sig)
            return StepSucceeded(
                Step.VERIFY,
                Step.VALIDATE,
                References(collection=collection, merkle_tree=merkle_tree, tree_config=P.tree_config_address(merkle_tree)),
                SIG_VERIFY,
                sig,
            )

        return self._run(Step.VERIFY, body, minimum=Step.VERIFY)

    # ------------------------------------------------------------------
    # Validate -> Complete
    # ------------------------------------------------------------------

    def validate(self) -> ProvisioningSession:
        def body() -> StepSucceeded:
            identity = self._require_identity()
            self.check_network()
            auth = self._require_authority()
            if not auth.verified:
                raise LocalValidationError("not_verified", "Market creator is not verified")
            if is_default_address(auth.core_collection) or is_default_address(auth.merkle_tree):
                raise ResourceMissing(
                    "references",
                    auth.address,
                    "Missing collection or merkle tree on-chain. Please create them and verify your market creator.",
                )

            col = self._read_linked(
                auth.core_collection, CollectionAccount.KIND, "Collection", "collection_read_failed", "Failed to read collection data"
            )
            tc = self._read_linked(
                P.tree_config_address(auth.merkle_tree),
                TreeConfigAccount.KIND,
                "Tree config",
                "tree_read_failed",
                "Failed to read merkle tree config",
            )
            if col is None:
                raise ResourceMissing("collection", auth.core_collection, "Collection account not found on-chain")
            if tc is None:
                raise ResourceMissing("tree_config", auth.merkle_tree, "Merkle tree config not found on-chain")

            verdict = self.verifier.verify(auth.address, col, tc)
            if isinstance(verdict, Violation):
                raise ValidationMismatch(verdict.relation, verdict.expected, verdict.actual, label=verdict.label)

            config = self._exporter().build(auth, identity, **self._form_fallbacks())
            return StepSucceeded(
                Step.VALIDATE,
                Step.COMPLETE,
                References(collection=auth.core_collection, merkle_tree=auth.merkle_tree, tree_config=tc.address),
                config=config,
            )

        return self._run(Step.VALIDATE, body, minimum=Step.VALIDATE)

    def exported_config(self) -> Optional[dict]:
        s = self._session
        return s.config if s.step == Step.COMPLETE else None


def _disconnect(wallet: WalletSession) -> None:
    fn = getattr(wallet, "disconnect", None)
    if callable(fn):
        fn()


def _reconnect(wallet: WalletSession) -> None:
    fn = getattr(wallet, "connect", None)
    if callable(fn):
        fn()
