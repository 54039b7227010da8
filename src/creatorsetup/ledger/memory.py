# src/creatorsetup/ledger/memory.py
from __future__ import annotations

import copy
import hashlib
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set, Tuple

from creatorsetup import programs as P
from creatorsetup.crypto.keys import b58encode
from creatorsetup.errors import NetworkError
from creatorsetup.ledger.client import (
    BaseLedgerClient,
    SendTransactionError,
    SignatureStatus,
    SimulationResult,
    TransactionDetail,
)
from creatorsetup.ledger.types import (
    AccountDecodeError,
    AccountInfo,
    AuthorityAccount,
    CollectionAccount,
    Market,
    MarketState,
    MarketType,
    MerkleTreeAccount,
    OracleType,
    TreeConfigAccount,
    WinningDirection,
    decode_account,
)
from creatorsetup.tx.transaction import Instruction, Transaction, TxDecodeError

Json = Dict[str, Any]

# Custom program error codes reported by the in-memory programs.
ERR_ALREADY_IN_USE = 0
ERR_FEE_TOO_HIGH = 6000
ERR_NOT_VERIFIED = 6001
ERR_COLLECTION_AUTHORITY = 6002
ERR_TREE_DELEGATE = 6003
ERR_ACCOUNT_MISSING = 3012
ERR_NOT_ENOUGH_KEYS = 0xBBD
ERR_MARKET_RESOLVED = 6010
ERR_MANUAL_NEEDS_VALUE = 6011
ERR_FEE_VAULT_MISMATCH = 6012
ERR_BAD_MARKET_ID = 6013
ERR_INVALID_TREE = 6014


class _ProgramError(Exception):
    def __init__(self, index: int, code: int, msg: str) -> None:
        super().__init__(msg)
        self.err: Json = {"InstructionError": [index, {"Custom": code}]}
        self.msg = msg


class InMemoryLedger(BaseLedgerClient):
    """Deterministic in-process ledger implementing LedgerClient.

    Executes the protocol's instructions atomically per transaction against a
    dict of accounts. Test harnesses can inject faults:

      - offline: every call raises NetworkError
      - unreadable: addresses whose reads raise NetworkError
      - drop_confirmations: signatures never reach a commitment level
      - fail_on_chain: instruction name -> err; passes preflight, fails on execution
      - duplicate_send: the next send lands, then reports "already processed"
      - oracle_outcomes: oracle address -> 1 (yes) / 0 (no) for oracle resolution
    """

    endpoint = "memory://local"

    def __init__(self, *, program_id: str, deploy_program: bool = True) -> None:
        # Virtual clock: confirmation polling advances time instead of sleeping.
        self.now = 0.0
        super().__init__(poll_s=0.5, sleep=self._advance, monotonic=lambda: self.now)
        self.program_id = program_id
        self._lock = threading.RLock()
        self._accounts: Dict[str, AccountInfo] = {}
        self._statuses: Dict[str, SignatureStatus] = {}
        self._details: Dict[str, TransactionDetail] = {}
        self._blockhashes: Set[str] = set()
        self._slot = 0

        self.offline = False
        self.unreadable: Set[str] = set()
        self.drop_confirmations = False
        self.fail_on_chain: Dict[str, Any] = {}
        self.duplicate_send = False
        self.oracle_outcomes: Dict[str, int] = {}

        self.calls: List[str] = []
        self.sent: List[str] = []

        if deploy_program:
            for pid in (program_id, P.MPL_CORE_PROGRAM_ID, P.BUBBLEGUM_PROGRAM_ID):
                self._accounts[pid] = AccountInfo(owner="BPFLoaderUpgradeab1e11111111111111111111111", data=b"\x01", executable=True)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def _advance(self, seconds: float) -> None:
        self.now += float(seconds)

    def put_account(self, address: str, owner: str, data: bytes) -> None:
        with self._lock:
            self._accounts[address] = AccountInfo(owner=owner, data=data, lamports=1)

    def put_record(self, record: Any, owner: Optional[str] = None) -> None:
        self.put_account(record.address, owner or self.program_id, record.to_data())

    def remove_account(self, address: str) -> None:
        with self._lock:
            self._accounts.pop(address, None)

    def read(self, address: str, schema: str) -> Any:
        """Decode without recording a call or honoring fault injection."""
        with self._lock:
            info = self._accounts.get(address)
        return None if info is None else decode_account(address, info, schema)

    def count(self, prefix: str) -> int:
        return sum(1 for c in self.calls if c.startswith(prefix))

    # ------------------------------------------------------------------
    # LedgerClient primitives
    # ------------------------------------------------------------------

    def _enter(self, call: str) -> None:
        self.calls.append(call)
        if self.offline:
            raise NetworkError("rpc_unreachable", f"{call.split(':')[0]} failed: ledger offline")

    def get_account_info(self, address: str) -> Optional[AccountInfo]:
        self._enter(f"getAccountInfo:{address}")
        if address in self.unreadable:
            raise NetworkError("rpc_unreachable", f"getAccountInfo failed for {address}")
        with self._lock:
            return self._accounts.get(address)

    def get_program_accounts(self, program_id: str) -> List[Tuple[str, AccountInfo]]:
        self._enter(f"getProgramAccounts:{program_id}")
        with self._lock:
            return [(a, i) for a, i in sorted(self._accounts.items()) if i.owner == program_id]

    def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        self._enter("getLatestBlockhash")
        with self._lock:
            self._slot += 1
            bh = b58encode(hashlib.sha256(f"blockhash:{self._slot}".encode("utf-8")).digest())
            self._blockhashes.add(bh)
            return bh

    def simulate_transaction(self, tx: Transaction, *, sig_verify: bool = False, commitment: str = "confirmed") -> SimulationResult:
        self._enter("simulateTransaction")
        with self._lock:
            if sig_verify and not tx.verify_signatures():
                return SimulationResult(err="SignatureFailure", logs=[])
            err, logs, _ = self._execute(tx, commit=False)
            return SimulationResult(err=err, logs=logs, units_consumed=1400 * len(tx.instructions))

    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str:
        self._enter("sendTransaction")
        try:
            tx = Transaction.from_bytes(raw)
        except TxDecodeError as e:
            raise SendTransactionError(f"failed to deserialize transaction: {e}") from e

        with self._lock:
            if not tx.verify_signatures():
                raise SendTransactionError("Transaction signature verification failure")
            sig = str(tx.signature)
            if sig in self._statuses:
                raise SendTransactionError("Transaction simulation failed: This transaction has already been processed")

            if not skip_preflight:
                err, logs, _ = self._execute(tx, commit=False)
                if err is not None:
                    raise SendTransactionError(f"Transaction simulation failed: Error processing Instruction: {_err_text(err)}", logs)

            err, logs, _ = self._execute(tx, commit=True)
            self._slot += 1
            self._statuses[sig] = SignatureStatus(
                signature=sig,
                confirmation_status=None if self.drop_confirmations else "confirmed",
                err=err,
                slot=self._slot,
            )
            self._details[sig] = TransactionDetail(signature=sig, err=err, logs=logs, slot=self._slot)
            self.sent.append(sig)

            if self.duplicate_send:
                self.duplicate_send = False
                raise SendTransactionError("Transaction simulation failed: This transaction has already been processed")
            return sig

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        self._enter(f"getSignatureStatuses:{signature}")
        with self._lock:
            return self._statuses.get(signature)

    def get_transaction(self, signature: str) -> Optional[TransactionDetail]:
        self._enter(f"getTransaction:{signature}")
        with self._lock:
            return self._details.get(signature)

    # ------------------------------------------------------------------
    # Asset index (DAS-shaped) used by discovery
    # ------------------------------------------------------------------

    def search_assets(self, authority: str, *, limit: int = 100) -> List[Json]:
        self._enter("searchAssets")
        items: List[Json] = []
        with self._lock:
            for addr, info in sorted(self._accounts.items()):
                if info.owner != P.MPL_CORE_PROGRAM_ID:
                    continue
                try:
                    col = CollectionAccount.decode(addr, info)
                except AccountDecodeError:
                    continue
                if col.update_authority == authority:
                    items.append(
                        {
                            "id": addr,
                            "grouping": [{"group_key": "collection", "group_value": addr}],
                            "content": {"metadata": {"name": col.name}},
                        }
                    )
        return items[:limit]

    # ------------------------------------------------------------------
    # Program execution
    # ------------------------------------------------------------------

    def _execute(self, tx: Transaction, *, commit: bool) -> Tuple[Any, List[str], Dict[str, AccountInfo]]:
        if not tx.recent_blockhash or tx.recent_blockhash not in self._blockhashes:
            return "BlockhashNotFound", [], self._accounts

        work = copy.copy(self._accounts)
        logs: List[str] = []
        for i, ix in enumerate(tx.instructions):
            logs.append(f"Program {ix.program_id} invoke [1]")
            logs.append(f"Program log: Instruction: {_title(ix.name)}")
            try:
                if commit and ix.name in self.fail_on_chain:
                    err = self.fail_on_chain[ix.name]
                    logs.append(f"Program {ix.program_id} failed: injected failure")
                    return err, logs, self._accounts
                self._apply(i, ix, tx, work)
            except _ProgramError as e:
                logs.append(f"Program log: Error: {e.msg}")
                logs.append(f"Program {ix.program_id} failed: custom program error: {hex(e.err['InstructionError'][1]['Custom'])}")
                return e.err, logs, self._accounts
            logs.append(f"Program {ix.program_id} success")

        if commit:
            self._accounts = work
        return None, logs, work

    def _signed(self, tx: Transaction, address: str) -> bool:
        return address in tx.signer_keys()

    def _get(self, work: Dict[str, AccountInfo], address: str, schema: str, i: int) -> Any:
        info = work.get(address)
        if info is None:
            raise _ProgramError(i, ERR_ACCOUNT_MISSING, f"account {address} not initialized")
        try:
            return decode_account(address, info, schema)
        except AccountDecodeError as e:
            raise _ProgramError(i, ERR_ACCOUNT_MISSING, str(e)) from e

    def _put(self, work: Dict[str, AccountInfo], record: Any, owner: str) -> None:
        work[record.address] = AccountInfo(owner=owner, data=record.to_data(), lamports=1)

    def _apply(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        handler = getattr(self, f"_ix_{ix.name}", None)
        if handler is None:
            raise _ProgramError(i, 101, f"unknown instruction {ix.name}")
        if len(ix.accounts) < 2:
            raise _ProgramError(i, ERR_NOT_ENOUGH_KEYS, "AccountNotEnoughKeys")
        handler(i, ix, tx, work)

    def _authority_for_signer(self, i: int, ix: Instruction, tx: Transaction) -> Tuple[str, str]:
        signer = ix.account(0)
        if not self._signed(tx, signer):
            raise _ProgramError(i, 3010, "signer missing")
        expected = P.authority_address(signer, self.program_id)
        if ix.account(1) != expected:
            raise _ProgramError(i, 2006, "authority seeds constraint violated")
        return signer, expected

    def _ix_create_market_creator(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        signer, addr = self._authority_for_signer(i, ix, tx)
        if addr in work:
            raise _ProgramError(i, ERR_ALREADY_IN_USE, f"Allocate: account {addr} already in use")
        bps = int(ix.args.get("creator_fee_bps", 0))
        if bps < 0 or bps > P.MAX_FEE_BPS:
            raise _ProgramError(i, ERR_FEE_TOO_HIGH, "fee exceeds maximum")
        rec = AuthorityAccount(
            address=addr,
            authority=signer,
            name=str(ix.args.get("name") or ""),
            fee_vault=str(ix.args.get("fee_vault") or ""),
            creator_fee_bps=bps,
            verified=False,
        )
        self._put(work, rec, self.program_id)

    def _ix_verify_market_creator(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        _, addr = self._authority_for_signer(i, ix, tx)
        if len(ix.accounts) < 5:
            raise _ProgramError(i, ERR_NOT_ENOUGH_KEYS, "AccountNotEnoughKeys")
        auth = self._get(work, addr, AuthorityAccount.KIND, i)
        col = self._get(work, ix.account(2), CollectionAccount.KIND, i)
        if col.update_authority != addr:
            raise _ProgramError(i, ERR_COLLECTION_AUTHORITY, "collection update authority is not the market creator")
        cfg = self._get(work, ix.account(4), TreeConfigAccount.KIND, i)
        if cfg.merkle_tree != ix.account(3) or cfg.tree_delegate != addr:
            raise _ProgramError(i, ERR_TREE_DELEGATE, "tree delegate is not the market creator")
        self._put(work, replace(auth, core_collection=col.address, merkle_tree=ix.account(3), verified=True), self.program_id)

    def _ix_update_market_creator_fee_vault(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        _, addr = self._authority_for_signer(i, ix, tx)
        auth = self._get(work, addr, AuthorityAccount.KIND, i)
        if len(ix.accounts) < 3 or ix.account(2) != auth.fee_vault:
            raise _ProgramError(i, ERR_FEE_VAULT_MISMATCH, "current fee vault does not match")
        self._put(work, replace(auth, fee_vault=str(ix.args.get("new_fee_vault") or "")), self.program_id)

    def _ix_update_market_creator_fee(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        _, addr = self._authority_for_signer(i, ix, tx)
        auth = self._get(work, addr, AuthorityAccount.KIND, i)
        bps = int(ix.args.get("creator_fee_bps", 0))
        if bps < 0 or bps > P.MAX_FEE_BPS:
            raise _ProgramError(i, ERR_FEE_TOO_HIGH, "fee exceeds maximum")
        self._put(work, replace(auth, creator_fee_bps=bps), self.program_id)

    def _ix_create_collection_v2(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        collection = ix.account(0)
        if not self._signed(tx, collection):
            raise _ProgramError(i, 3010, "collection signer missing")
        if collection in work:
            raise _ProgramError(i, ERR_ALREADY_IN_USE, f"Allocate: account {collection} already in use")
        rec = CollectionAccount(
            address=collection,
            update_authority=ix.account(1),
            name=str(ix.args.get("name") or ""),
            uri=str(ix.args.get("uri") or ""),
        )
        self._put(work, rec, P.MPL_CORE_PROGRAM_ID)

    def _ix_create_tree_v2(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        if len(ix.accounts) < 3:
            raise _ProgramError(i, ERR_NOT_ENOUGH_KEYS, "AccountNotEnoughKeys")
        cfg_addr, tree, payer = ix.account(0), ix.account(1), ix.account(2)
        if not self._signed(tx, tree):
            raise _ProgramError(i, 3010, "merkle tree signer missing")
        if tree in work or cfg_addr in work:
            raise _ProgramError(i, ERR_ALREADY_IN_USE, f"Allocate: account {tree} already in use")
        if cfg_addr != P.tree_config_address(tree):
            raise _ProgramError(i, 2006, "tree config seeds constraint violated")
        depth = int(ix.args.get("max_depth", 0))
        canopy = int(ix.args.get("canopy_depth", 0))
        buf = int(ix.args.get("max_buffer_size", 0))
        if depth <= 0 or buf <= 0 or canopy >= depth:
            raise _ProgramError(i, ERR_INVALID_TREE, "invalid tree parameters")
        self._put(work, MerkleTreeAccount(address=tree, max_depth=depth, max_buffer_size=buf, canopy_depth=canopy), P.BUBBLEGUM_PROGRAM_ID)
        cfg = TreeConfigAccount(
            address=cfg_addr,
            merkle_tree=tree,
            tree_creator=payer,
            tree_delegate=payer,
            total_mint_capacity=2**depth,
            is_public=bool(ix.args.get("public", False)),
        )
        self._put(work, cfg, P.BUBBLEGUM_PROGRAM_ID)

    def _ix_set_tree_delegate(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        if len(ix.accounts) < 3:
            raise _ProgramError(i, ERR_NOT_ENOUGH_KEYS, "AccountNotEnoughKeys")
        cfg = self._get(work, ix.account(0), TreeConfigAccount.KIND, i)
        creator = ix.account(1)
        if not self._signed(tx, creator) or creator != cfg.tree_creator:
            raise _ProgramError(i, 6004, "tree creator must sign")
        self._put(work, replace(cfg, tree_delegate=ix.account(2)), P.BUBBLEGUM_PROGRAM_ID)

    def _ix_create_market(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        _, addr = self._authority_for_signer(i, ix, tx)
        if len(ix.accounts) < 5:
            raise _ProgramError(i, ERR_NOT_ENOUGH_KEYS, "AccountNotEnoughKeys")
        auth = self._get(work, addr, AuthorityAccount.KIND, i)
        if not auth.verified:
            raise _ProgramError(i, ERR_NOT_VERIFIED, "market creator not verified")
        market_id = int(ix.args.get("market_id", -1))
        if market_id != auth.num_markets:
            raise _ProgramError(i, ERR_BAD_MARKET_ID, "unexpected market id")
        bst = ix.args.get("betting_start_time")
        market = Market(
            address=ix.account(2),
            market_id=market_id,
            authority=addr,
            question=str(ix.args.get("question") or ""),
            metadata_uri=str(ix.args.get("metadata_uri") or ""),
            start_time=int(ix.args.get("start_time") or 0),
            end_time=int(ix.args.get("end_time") or 0),
            betting_start_time=None if bst is None else int(bst),
            market_type=MarketType(ix.args.get("market_type") or MarketType.LIVE.value),
            oracle_type=OracleType(ix.args.get("oracle_type") or OracleType.MANUAL.value),
            oracle_pubkey=ix.account(3),
            mint=ix.account(4),
        )
        if ix.account(2) in work:
            raise _ProgramError(i, ERR_ALREADY_IN_USE, "market account already in use")
        self._put(work, market, self.program_id)
        self._put(work, replace(auth, num_markets=auth.num_markets + 1, active_markets=auth.active_markets + 1), self.program_id)

    def _ix_resolve_market(self, i: int, ix: Instruction, tx: Transaction, work: Dict[str, AccountInfo]) -> None:
        if len(ix.accounts) < 4:
            raise _ProgramError(i, ERR_NOT_ENOUGH_KEYS, "AccountNotEnoughKeys")
        _, addr = self._authority_for_signer(i, ix, tx)
        auth = self._get(work, addr, AuthorityAccount.KIND, i)
        market = self._get(work, ix.account(2), Market.KIND, i)
        if market.authority != addr:
            raise _ProgramError(i, 2001, "market authority mismatch")
        if market.market_state == MarketState.RESOLVED:
            raise _ProgramError(i, ERR_MARKET_RESOLVED, "market already resolved")
        value = ix.args.get("resolution_value")
        if value is None:
            if market.oracle_pubkey == P.MANUAL_ORACLE_PLACEHOLDER:
                raise _ProgramError(i, ERR_MANUAL_NEEDS_VALUE, "manual market requires a resolution value")
            value = self.oracle_outcomes.get(market.oracle_pubkey, 1)
        direction = WinningDirection.YES if int(value) == 1 else WinningDirection.NO
        self._put(work, replace(market, market_state=MarketState.RESOLVED, winning_direction=direction), self.program_id)
        self._put(work, replace(auth, active_markets=max(0, auth.active_markets - 1)), self.program_id)


def _title(name: str) -> str:
    return "".join(part.capitalize() for part in name.split("_"))


def _err_text(err: Any) -> str:
    if isinstance(err, dict) and "InstructionError" in err:
        idx, inner = err["InstructionError"]
        if isinstance(inner, dict) and "Custom" in inner:
            return f"{idx}: custom program error: {hex(int(inner['Custom']))}"
    return str(err)
