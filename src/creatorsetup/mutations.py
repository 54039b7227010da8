# src/creatorsetup/mutations.py
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from creatorsetup import programs as P
from creatorsetup.config import NETWORK_MAINNET, NetworkConfig
from creatorsetup.crypto.keys import parse_address
from creatorsetup.discovery import Discovery
from creatorsetup.errors import (
    LocalValidationError,
    ResourceMissing,
    SignerUnavailable,
    SimulationFailed,
    StepBusy,
    SubmitFailed,
)
from creatorsetup.ledger.client import LedgerClient
from creatorsetup.ledger.types import AuthorityAccount, Market, MarketState, MarketType, OracleType
from creatorsetup.logging_utils import log_event
from creatorsetup.provisioning.machine import fee_percent_to_bps
from creatorsetup.submitter import TransactionSubmitter
from creatorsetup.tx.transaction import Transaction
from creatorsetup.wallet import WalletSession

Json = Dict[str, Any]
T = TypeVar("T")

log = logging.getLogger("creatorsetup.mutations")

ACCOUNT_KEYS_HINT = "Resolve failed: missing required accounts (AccountNotEnoughKeys). Please refresh and try again."
_ACCOUNT_KEYS_MARKER = "custom program error: 0xbbd"


class ResolveChoice(str, Enum):
    YES = "yes"
    NO = "no"
    ORACLE = "oracle"


class MintChoice(str, Enum):
    USDC = "usdc"
    SOL = "sol"
    BONK = "bonk"
    CUSTOM = "custom"


@dataclass(frozen=True)
class MarketForm:
    question: str
    metadata_uri: str
    start_time: Any
    end_time: Any
    market_type: str = MarketType.LIVE.value
    betting_start_time: Any = None
    oracle_type: str = OracleType.MANUAL.value
    oracle_pubkey: str = ""
    mint_choice: str = MintChoice.USDC.value
    custom_mint: str = ""


def _to_unix(v: Any) -> Optional[int]:
    """Unix seconds from an int or an ISO-8601 string; None when unparseable."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return int(v) if math.isfinite(v) else None
    s = str(v).strip()
    if not s:
        return None
    if s.lstrip("-").isdigit():
        return int(s)
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _market_id(v: Any) -> int:
    """Market ids are non-negative integers; numeric strings are accepted."""
    s = "" if isinstance(v, bool) else str(v).strip()
    if not (s.isascii() and s.isdigit()):
        raise LocalValidationError("invalid_market_id", f"Invalid market id: {v!r}")
    return int(s)


def _has_account_keys_error(text: str, logs: List[str]) -> bool:
    return _ACCOUNT_KEYS_MARKER in text or any(_ACCOUNT_KEYS_MARKER in line for line in logs)


class MutationProtocol:
    """Single-step edits on an already-provisioned authority.

    Shares the TransactionSubmitter pipeline with provisioning, so every
    mutation is simulated before the wallet is asked to sign.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: WalletSession,
        cfg: NetworkConfig,
        *,
        submitter: Optional[TransactionSubmitter] = None,
        discovery: Optional[Discovery] = None,
    ) -> None:
        self.ledger = ledger
        self.wallet = wallet
        self.cfg = cfg
        self.submitter = submitter or TransactionSubmitter.from_config(ledger, cfg)
        self.discovery = discovery
        self._busy = threading.Lock()

    def _identity(self) -> str:
        identity = self.wallet.identity
        if identity is None:
            raise SignerUnavailable("Wallet not connected")
        return identity

    def _exclusive(self, name: str, fn: Callable[[], T]) -> T:
        if not self._busy.acquire(blocking=False):
            raise StepBusy(name)
        try:
            return fn()
        finally:
            self._busy.release()

    def authority_address(self) -> str:
        return P.authority_address(self._identity(), self.cfg.program_id)

    def load_info(self) -> Optional[AuthorityAccount]:
        return self.ledger.decode(self.authority_address(), AuthorityAccount.KIND)

    def _require_authority(self) -> AuthorityAccount:
        auth = self.load_info()
        if auth is None:
            raise ResourceMissing(
                "authority",
                self.authority_address(),
                "Market creator account not found. Complete setup before managing it.",
            )
        return auth

    def manager_view(self) -> Json:
        auth = self._require_authority()
        out: Json = {
            "authority": {
                "address": auth.address,
                "name": auth.name,
                "fee_vault": auth.fee_vault,
                "creator_fee_bps": auth.creator_fee_bps,
                "creator_fee_percent": auth.fee_percent,
                "verified": auth.verified,
                "core_collection": auth.core_collection,
                "merkle_tree": auth.merkle_tree,
                "num_markets": auth.num_markets,
                "active_markets": auth.active_markets,
            }
        }
        discovery = self.discovery or Discovery(self.ledger)
        out.update(discovery.discover(auth))
        return out

    # ------------------------------------------------------------------
    # Fee recipient / fee rate
    # ------------------------------------------------------------------

    def update_fee_vault(self, new_fee_vault: str) -> str:
        def run() -> str:
            identity = self._identity()
            if parse_address(new_fee_vault) is None:
                raise LocalValidationError("invalid_fee_vault", "Invalid fee vault address")
            auth = self._require_authority()
            tx = Transaction(fee_payer=identity).add(
                P.update_fee_vault(
                    program_id=self.cfg.program_id,
                    signer=identity,
                    current_fee_vault=auth.fee_vault,
                    new_fee_vault=new_fee_vault.strip(),
                )
            )
            sig = self.submitter.submit_and_confirm(tx, self.wallet)
            log_event(log, "fee_vault_updated", authority=auth.address, signature=sig)
            return sig

        return self._exclusive("update_fee_vault", run)

    def update_fee(self, fee_percent: float) -> str:
        def run() -> str:
            identity = self._identity()
            try:
                bps = fee_percent_to_bps(float(fee_percent))
            except (TypeError, ValueError, OverflowError) as e:
                raise LocalValidationError("invalid_fee", "Fee must be a number") from e
            if bps < 0 or bps > P.MAX_FEE_BPS:
                raise LocalValidationError("invalid_fee", "Fee must be between 0% and 20%", {"creator_fee_bps": bps})
            auth = self._require_authority()
            tx = Transaction(fee_payer=identity).add(
                P.update_fee(program_id=self.cfg.program_id, signer=identity, creator_fee_bps=bps)
            )
            sig = self.submitter.submit_and_confirm(tx, self.wallet)
            log_event(log, "fee_updated", authority=auth.address, creator_fee_bps=bps, signature=sig)
            return sig

        return self._exclusive("update_fee", run)

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------

    def list_markets(self) -> List[Market]:
        auth_addr = self.authority_address()
        markets = self.ledger.find_accounts(self.cfg.program_id, Market.KIND, authority=auth_addr)
        return sorted(markets, key=lambda m: m.market_id, reverse=True)

    def _default_mint(self) -> str:
        return P.TOKEN_MINTS["USDC_MAINNET"] if self.cfg.network == NETWORK_MAINNET else P.TOKEN_MINTS["USDC_DEVNET"]

    def _validate_market(self, form: MarketForm) -> Json:
        question = (form.question or "").strip()
        if not question:
            raise LocalValidationError("invalid_question", "Market question is required.")
        if len(question) > P.MAX_QUESTION_LEN:
            raise LocalValidationError("invalid_question", f"Market question must be {P.MAX_QUESTION_LEN} characters or fewer.")
        uri = (form.metadata_uri or "").strip()
        if not uri:
            raise LocalValidationError("invalid_metadata_uri", "Metadata URI is required.")

        if form.start_time in (None, "") or form.end_time in (None, ""):
            raise LocalValidationError("invalid_times", "Start and end times are required.")
        start, end = _to_unix(form.start_time), _to_unix(form.end_time)
        if start is None or end is None:
            raise LocalValidationError("invalid_times", "Start and end times must be valid dates.")
        if end <= start:
            raise LocalValidationError("invalid_times", "End time must be after start time.")

        try:
            market_type = MarketType(str(form.market_type or MarketType.LIVE.value).lower())
        except ValueError as e:
            raise LocalValidationError("invalid_market_type", "Market type must be live or future.") from e
        betting_start: Optional[int] = None
        if market_type == MarketType.FUTURE:
            if form.betting_start_time in (None, ""):
                raise LocalValidationError("invalid_times", "Betting start time is required for future markets.")
            betting_start = _to_unix(form.betting_start_time)
            if betting_start is None:
                raise LocalValidationError("invalid_times", "Betting start time must be a valid date.")

        try:
            oracle_type = OracleType(str(form.oracle_type or OracleType.MANUAL.value).lower())
        except ValueError as e:
            raise LocalValidationError("invalid_oracle_type", "Oracle type must be manual or switchboard.") from e
        oracle = P.MANUAL_ORACLE_PLACEHOLDER
        if oracle_type == OracleType.SWITCHBOARD:
            if not (form.oracle_pubkey or "").strip():
                raise LocalValidationError("invalid_oracle", "Oracle public key is required for switchboard markets.")
            pk = parse_address(form.oracle_pubkey.strip())
            if pk is None:
                raise LocalValidationError("invalid_oracle", "Oracle public key is invalid.")
            oracle = str(pk)

        try:
            mint_choice = MintChoice(str(form.mint_choice or MintChoice.USDC.value).lower())
        except ValueError as e:
            raise LocalValidationError("invalid_mint", "Mint must be usdc, sol, bonk or custom.") from e
        if mint_choice == MintChoice.CUSTOM:
            if not (form.custom_mint or "").strip():
                raise LocalValidationError("invalid_mint", "Custom mint address is required.")
            pk = parse_address(form.custom_mint.strip())
            if pk is None:
                raise LocalValidationError("invalid_mint", "Custom mint address is invalid.")
            mint = str(pk)
        elif mint_choice == MintChoice.SOL:
            mint = P.TOKEN_MINTS["SOL"]
        elif mint_choice == MintChoice.BONK:
            mint = P.TOKEN_MINTS["BONK"]
        else:
            mint = self._default_mint()

        return {
            "question": question,
            "metadata_uri": uri,
            "start_time": start,
            "end_time": end,
            "betting_start_time": betting_start,
            "market_type": market_type.value,
            "oracle_type": oracle_type.value,
            "oracle_pubkey": oracle,
            "mint": mint,
        }

    def create_market(self, form: MarketForm) -> Tuple[str, str]:
        """Returns (signature, market address)."""

        def run() -> Tuple[str, str]:
            identity = self._identity()
            fields = self._validate_market(form)
            auth = self.load_info()
            if auth is None:
                raise ResourceMissing(
                    "authority",
                    self.authority_address(),
                    "Market creator account not found. Complete setup before creating markets.",
                )
            if not auth.verified:
                raise LocalValidationError("not_verified", "Market creator is not verified. Complete setup before creating markets.")

            market_id = auth.num_markets
            tx = Transaction(fee_payer=identity).add(
                P.create_market(program_id=self.cfg.program_id, payer=identity, market_id=market_id, **fields)
            )
            sig = self.submitter.submit_and_confirm(tx, self.wallet)
            address = P.market_address(auth.address, market_id, self.cfg.program_id)
            log_event(log, "market_created", market_id=market_id, market=address, signature=sig)
            return sig, address

        return self._exclusive("create_market", run)

    def resolve_market(self, market_id: int, choice: str) -> str:
        def run() -> str:
            identity = self._identity()
            mid = _market_id(market_id)
            try:
                resolve = ResolveChoice(str(choice or "").strip().lower())
            except ValueError as e:
                raise LocalValidationError("invalid_choice", "Resolution must be yes, no or oracle.") from e

            auth_addr = self.authority_address()
            market = self.ledger.decode(P.market_address(auth_addr, mid, self.cfg.program_id), Market.KIND)
            if market is None:
                raise ResourceMissing("market", str(mid), f"Market {mid} not found")
            if market.market_state == MarketState.RESOLVED:
                raise LocalValidationError("market_resolved", f"Market {mid} is already resolved.")

            is_manual = market.oracle_pubkey == P.MANUAL_ORACLE_PLACEHOLDER
            if resolve == ResolveChoice.ORACLE and is_manual:
                raise LocalValidationError("manual_requires_value", "Manual markets require a yes or no resolution value.")
            value: Optional[int] = {ResolveChoice.YES: 1, ResolveChoice.NO: 0}.get(resolve)

            tx = Transaction(fee_payer=identity).add(
                P.resolve_market(
                    program_id=self.cfg.program_id,
                    payer=identity,
                    market_id=mid,
                    oracle_pubkey=market.oracle_pubkey,
                    resolution_value=value,
                )
            )
            try:
                sig = self.submitter.submit_and_confirm(tx, self.wallet, hint="Resolve simulation failed")
            except SimulationFailed as e:
                if _has_account_keys_error(str(e), e.logs):
                    raise SimulationFailed(e.err, e.logs, hint=f"{ACCOUNT_KEYS_HINT} Resolve simulation failed") from e
                raise
            except SubmitFailed as e:
                if _has_account_keys_error(e.reason, e.logs):
                    raise SubmitFailed(f"{ACCOUNT_KEYS_HINT}\n{e.reason}", e.logs, signature=e.signature) from e
                raise
            log_event(log, "market_resolved", market_id=mid, choice=resolve.value, signature=sig)
            return sig

        return self._exclusive("resolve_market", run)
