# src/creatorsetup/tx/transaction.py
from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from creatorsetup.crypto.keys import Keypair, Pubkey, b58decode, b58encode

Json = Dict[str, Any]


class TxDecodeError(ValueError):
    def __init__(self, code: str, msg: str) -> None:
        super().__init__(msg)
        self.code = code


@dataclass(frozen=True, slots=True)
class AccountMeta:
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False

    def to_json(self) -> List[Any]:
        return [self.pubkey, bool(self.is_signer), bool(self.is_writable)]

    @staticmethod
    def from_json(j: Any) -> "AccountMeta":
        if isinstance(j, dict):
            return AccountMeta(str(j.get("pubkey", "")), bool(j.get("is_signer")), bool(j.get("is_writable")))
        pk, s, w = j
        return AccountMeta(str(pk), bool(s), bool(w))


@dataclass(frozen=True, slots=True)
class Instruction:
    program_id: str
    name: str
    accounts: Tuple[AccountMeta, ...] = ()
    args: Dict[str, Any] = field(default_factory=dict)

    def account(self, index: int) -> str:
        return self.accounts[index].pubkey

    def to_json(self) -> Json:
        return {
            "program_id": self.program_id,
            "name": self.name,
            "accounts": [a.to_json() for a in self.accounts],
            "args": self.args,
        }

    @staticmethod
    def from_json(j: Json) -> "Instruction":
        return Instruction(
            program_id=str(j.get("program_id", "")),
            name=str(j.get("name", "")),
            accounts=tuple(AccountMeta.from_json(a) for a in (j.get("accounts") or [])),
            args=dict(j.get("args") or {}),
        )


def _canonical(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class Transaction:
    """A transaction candidate: fee payer, recent blockhash, instructions, signatures.

    The signed message is the canonical JSON of the message body. Signatures
    are base58 Ed25519 signatures keyed by signer address; the fee payer's
    signature is the transaction's identifying signature.
    """

    def __init__(
        self,
        *,
        fee_payer: str,
        instructions: Optional[Iterable[Instruction]] = None,
        recent_blockhash: Optional[str] = None,
    ) -> None:
        self.fee_payer = str(fee_payer)
        self.recent_blockhash = recent_blockhash
        self.instructions: List[Instruction] = list(instructions or [])
        self.signatures: Dict[str, str] = {}

    def add(self, *ixs: Instruction) -> "Transaction":
        self.instructions.extend(ixs)
        self.signatures.clear()
        return self

    def signer_keys(self) -> List[str]:
        out = [self.fee_payer]
        for ix in self.instructions:
            for meta in ix.accounts:
                if meta.is_signer and meta.pubkey not in out:
                    out.append(meta.pubkey)
        return out

    def message_json(self) -> Json:
        return {
            "fee_payer": self.fee_payer,
            "recent_blockhash": self.recent_blockhash,
            "instructions": [ix.to_json() for ix in self.instructions],
        }

    def message_bytes(self) -> bytes:
        if not self.recent_blockhash:
            raise ValueError("transaction has no recent blockhash")
        return _canonical(self.message_json())

    def partial_sign(self, *keypairs: Keypair) -> "Transaction":
        required = set(self.signer_keys())
        msg = self.message_bytes()
        for kp in keypairs:
            addr = str(kp.pubkey)
            if addr not in required:
                raise ValueError(f"{addr} is not a required signer")
            self.signatures[addr] = b58encode(kp.sign(msg))
        return self

    def add_signature(self, pubkey: str, signature: bytes) -> None:
        if pubkey not in self.signer_keys():
            raise ValueError(f"{pubkey} is not a required signer")
        self.signatures[pubkey] = b58encode(signature)

    def missing_signers(self) -> List[str]:
        return [k for k in self.signer_keys() if k not in self.signatures]

    def is_fully_signed(self) -> bool:
        return not self.missing_signers()

    def verify_signatures(self) -> bool:
        msg = self.message_bytes()
        for addr in self.signer_keys():
            sig = self.signatures.get(addr)
            if not sig:
                return False
            try:
                if not Pubkey.from_string(addr).verify(msg, b58decode(sig)):
                    return False
            except ValueError:
                return False
        return True

    @property
    def signature(self) -> Optional[str]:
        """The fee payer's signature, which identifies the transaction on the ledger."""
        return self.signatures.get(self.fee_payer)

    def copy(self) -> "Transaction":
        return copy.deepcopy(self)

    def to_json(self) -> Json:
        return {
            "message": self.message_json(),
            "signatures": [[k, self.signatures[k]] for k in self.signer_keys() if k in self.signatures],
        }

    def serialize(self, *, require_all_signatures: bool = True) -> bytes:
        if require_all_signatures and not self.is_fully_signed():
            raise ValueError(f"missing signatures for {', '.join(self.missing_signers())}")
        if not self.recent_blockhash:
            raise ValueError("transaction has no recent blockhash")
        return _canonical(self.to_json())

    @staticmethod
    def from_json(j: Any) -> "Transaction":
        if not isinstance(j, dict) or not isinstance(j.get("message"), dict):
            raise TxDecodeError("bad_shape", "transaction must be an object with a message")
        m = j["message"]
        tx = Transaction(
            fee_payer=str(m.get("fee_payer") or ""),
            instructions=[Instruction.from_json(ix) for ix in (m.get("instructions") or [])],
            recent_blockhash=m.get("recent_blockhash"),
        )
        for pair in j.get("signatures") or []:
            if isinstance(pair, (list, tuple)) and len(pair) == 2:
                tx.signatures[str(pair[0])] = str(pair[1])
        return tx

    @staticmethod
    def from_bytes(raw: bytes) -> "Transaction":
        try:
            j = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TxDecodeError("decode_failed", f"decode failed: {e}") from e
        return Transaction.from_json(j)


def signature_from_payload(raw: bytes) -> Optional[str]:
    """Recover the identifying signature embedded in an already-signed payload."""
    try:
        tx = Transaction.from_bytes(raw)
    except TxDecodeError:
        return None
    return tx.signature
