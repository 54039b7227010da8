# src/creatorsetup/ledger/client.py
from __future__ import annotations

import base64
import itertools
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from creatorsetup.errors import NetworkError
from creatorsetup.ledger.types import AccountDecodeError, AccountInfo, decode_account
from creatorsetup.logging_utils import log_event
from creatorsetup.tx.transaction import Transaction

Json = Dict[str, Any]

# (url, body, timeout_s) -> decoded JSON body
Poster = Callable[[str, Json, float], Any]

log = logging.getLogger("creatorsetup.ledger")

COMMITMENT_ORDER = {"processed": 0, "confirmed": 1, "finalized": 2}


def http_post_json(url: str, body: Json, timeout_s: float = 10.0) -> Any:
    """POST a JSON body and decode the JSON reply. Every transport failure is a NetworkError."""
    data = json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"}, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        raise NetworkError("rpc_http_error", f"HTTP {e.code}", {"status": int(e.code)}) from e
    except urllib.error.URLError as e:
        raise NetworkError("rpc_unreachable", str(getattr(e, "reason", e))) from e
    except OSError as e:
        # Socket timeouts surface as OSError rather than URLError.
        raise NetworkError("rpc_unreachable", str(e)) from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise NetworkError("rpc_bad_response", "non-JSON response body") from e


def commitment_reached(status: Optional[str], wanted: str) -> bool:
    if status is None:
        return False
    return COMMITMENT_ORDER.get(status, -1) >= COMMITMENT_ORDER.get(wanted, 1)


class SendTransactionError(Exception):
    """The ledger refused a submitted payload (preflight or duplicate)."""

    def __init__(self, message: str, logs: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.logs: List[str] = list(logs or [])

    @property
    def already_processed(self) -> bool:
        return "already been processed" in self.message.lower()


@dataclass(frozen=True)
class SimulationResult:
    err: Any = None
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.err is None


@dataclass(frozen=True)
class SignatureStatus:
    signature: str
    confirmation_status: Optional[str]
    err: Any = None
    slot: int = 0


@dataclass(frozen=True)
class TransactionDetail:
    signature: str
    err: Any = None
    logs: List[str] = field(default_factory=list)
    slot: int = 0


class LedgerClient(Protocol):
    """Read / simulate / submit / confirm primitives against the ledger."""

    endpoint: str

    def get_account_info(self, address: str) -> Optional[AccountInfo]: ...

    def get_program_accounts(self, program_id: str) -> List[Tuple[str, AccountInfo]]: ...

    def simulate_transaction(self, tx: Transaction, *, sig_verify: bool = False, commitment: str = "confirmed") -> SimulationResult: ...

    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str: ...

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]: ...

    def confirm_transaction(self, signature: str, commitment: str = "confirmed", *, timeout_s: float = 60.0) -> Optional[SignatureStatus]: ...

    def get_latest_blockhash(self, commitment: str = "confirmed") -> str: ...

    def get_transaction(self, signature: str) -> Optional[TransactionDetail]: ...

    def decode(self, address: str, schema: str) -> Any: ...

    def find_accounts(self, program_id: str, schema: str, **match: Any) -> List[Any]: ...


class BaseLedgerClient:
    """Shared behavior layered over the raw primitives: decoding and bounded confirmation."""

    endpoint: str = ""

    def __init__(
        self,
        *,
        poll_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._poll_s = max(0.0, float(poll_s))
        self._sleep = sleep
        self._monotonic = monotonic

    def get_account_info(self, address: str) -> Optional[AccountInfo]:
        raise NotImplementedError

    def get_program_accounts(self, program_id: str) -> List[Tuple[str, AccountInfo]]:
        raise NotImplementedError

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        raise NotImplementedError

    def decode(self, address: str, schema: str) -> Any:
        """Fetch and decode an account. Returns None when the account does not exist."""
        info = self.get_account_info(address)
        if info is None:
            return None
        return decode_account(address, info, schema)

    def find_accounts(self, program_id: str, schema: str, **match: Any) -> List[Any]:
        out: List[Any] = []
        for address, info in self.get_program_accounts(program_id):
            try:
                rec = decode_account(address, info, schema)
            except AccountDecodeError:
                continue
            if all(getattr(rec, k, None) == v for k, v in match.items()):
                out.append(rec)
        return out

    def confirm_transaction(self, signature: str, commitment: str = "confirmed", *, timeout_s: float = 60.0) -> Optional[SignatureStatus]:
        """Poll until the signature reaches `commitment` or fails.

        Returns the final status, or None if the deadline passed with the
        status still unknown.
        """
        deadline = self._monotonic() + float(timeout_s)
        while True:
            status = self.get_signature_status(signature)
            if status is not None and (status.err is not None or commitment_reached(status.confirmation_status, commitment)):
                return status
            if self._monotonic() >= deadline:
                return None
            self._sleep(self._poll_s)


class RpcLedgerClient(BaseLedgerClient):
    """JSON-RPC 2.0 client over HTTP.

    Transport failures (connection errors, timeouts, non-2xx, malformed
    bodies) raise NetworkError so callers can offer a retry. RPC-level
    errors on sendTransaction raise SendTransactionError.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 10.0,
        poll_s: float = 1.0,
        commitment: str = "confirmed",
        post: Poster = http_post_json,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(poll_s=poll_s, sleep=sleep, monotonic=monotonic)
        self.endpoint = endpoint.rstrip("/")
        self._timeout = timeout_s
        self._commitment = commitment
        self._post = post
        self._ids = itertools.count(1)

    def _call(self, method: str, params: List[Any]) -> Json:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            decoded = self._post(self.endpoint, body, self._timeout)
        except NetworkError as e:
            log_event(log, "rpc_transport_error", level=logging.WARNING, method=method, code=e.code, error=e.reason)
            raise NetworkError(e.code, f"{method} failed: {e.reason}", e.details) from e
        if not isinstance(decoded, dict):
            raise NetworkError("rpc_bad_response", f"{method} returned an unexpected body")
        return decoded

    def _result(self, method: str, params: List[Any]) -> Any:
        decoded = self._call(method, params)
        err = decoded.get("error")
        if err:
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise NetworkError("rpc_error", f"{method} failed: {msg}", {"error": err})
        return decoded.get("result")

    @staticmethod
    def _account(value: Any) -> Optional[AccountInfo]:
        if not isinstance(value, dict):
            return None
        data = value.get("data")
        raw = b""
        if isinstance(data, list) and data:
            raw = base64.b64decode(str(data[0]))
        elif isinstance(data, str):
            raw = base64.b64decode(data)
        return AccountInfo(
            owner=str(value.get("owner") or ""),
            data=raw,
            lamports=int(value.get("lamports") or 0),
            executable=bool(value.get("executable", False)),
        )

    def get_account_info(self, address: str) -> Optional[AccountInfo]:
        res = self._result("getAccountInfo", [address, {"encoding": "base64", "commitment": self._commitment}])
        value = res.get("value") if isinstance(res, dict) else None
        return self._account(value)

    def get_program_accounts(self, program_id: str) -> List[Tuple[str, AccountInfo]]:
        res = self._result("getProgramAccounts", [program_id, {"encoding": "base64", "commitment": self._commitment}])
        out: List[Tuple[str, AccountInfo]] = []
        for row in res or []:
            if not isinstance(row, dict):
                continue
            info = self._account(row.get("account"))
            if info is not None:
                out.append((str(row.get("pubkey") or ""), info))
        return out

    def simulate_transaction(self, tx: Transaction, *, sig_verify: bool = False, commitment: str = "confirmed") -> SimulationResult:
        raw = tx.serialize(require_all_signatures=sig_verify)
        res = self._result(
            "simulateTransaction",
            [
                base64.b64encode(raw).decode("ascii"),
                {"encoding": "base64", "sigVerify": bool(sig_verify), "commitment": commitment},
            ],
        )
        value = res.get("value") if isinstance(res, dict) else {}
        value = value if isinstance(value, dict) else {}
        return SimulationResult(
            err=value.get("err"),
            logs=[str(x) for x in (value.get("logs") or [])],
            units_consumed=value.get("unitsConsumed"),
        )

    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str:
        decoded = self._call(
            "sendTransaction",
            [
                base64.b64encode(raw).decode("ascii"),
                {"encoding": "base64", "skipPreflight": bool(skip_preflight), "preflightCommitment": self._commitment},
            ],
        )
        err = decoded.get("error")
        if err:
            if isinstance(err, dict):
                data = err.get("data") if isinstance(err.get("data"), dict) else {}
                raise SendTransactionError(str(err.get("message") or "sendTransaction failed"), data.get("logs") or [])
            raise SendTransactionError(str(err))
        return str(decoded.get("result") or "")

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        res = self._result("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = res.get("value") if isinstance(res, dict) else None
        if not values or not isinstance(values[0], dict):
            return None
        v = values[0]
        return SignatureStatus(
            signature=signature,
            confirmation_status=v.get("confirmationStatus"),
            err=v.get("err"),
            slot=int(v.get("slot") or 0),
        )

    def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        res = self._result("getLatestBlockhash", [{"commitment": commitment}])
        value = res.get("value") if isinstance(res, dict) else None
        if not isinstance(value, dict) or not value.get("blockhash"):
            raise NetworkError("rpc_bad_response", "getLatestBlockhash returned no blockhash")
        return str(value["blockhash"])

    def get_transaction(self, signature: str) -> Optional[TransactionDetail]:
        res = self._result(
            "getTransaction",
            [signature, {"commitment": self._commitment, "maxSupportedTransactionVersion": 0, "encoding": "json"}],
        )
        if not isinstance(res, dict):
            return None
        meta = res.get("meta") if isinstance(res.get("meta"), dict) else {}
        return TransactionDetail(
            signature=signature,
            err=meta.get("err"),
            logs=[str(x) for x in (meta.get("logMessages") or [])],
            slot=int(res.get("slot") or 0),
        )
