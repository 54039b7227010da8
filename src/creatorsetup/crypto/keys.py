# src/creatorsetup/crypto/keys.py
from __future__ import annotations

"""Addresses, keypairs and program-derived addresses.

Ledger addresses are 32-byte Ed25519 public keys rendered in base58 (bitcoin
alphabet). Program-derived addresses are sha256 digests that are guaranteed
to fall OFF the Ed25519 curve, so no private key can ever sign for them.
"""

import hashlib
import json
import secrets
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(_B58_ALPHABET)}

PUBKEY_LEN = 32
SIGNATURE_LEN = 64
MAX_SEED_LEN = 32
MAX_SEEDS = 16
_PDA_MARKER = b"ProgramDerivedAddress"

# Curve25519 (edwards form) constants for the off-curve test.
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def b58encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, r = divmod(n, 58)
        out.append(_B58_ALPHABET[r])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(out))


def b58decode(s: str) -> bytes:
    s = (s or "").strip()
    if not s:
        raise ValueError("empty base58 string")
    n = 0
    for c in s:
        i = _B58_INDEX.get(c)
        if i is None:
            raise ValueError(f"invalid base58 character {c!r}")
        n = n * 58 + i
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(s) - len(s.lstrip("1"))
    return b"\x00" * pad + body


def is_on_curve(point: bytes) -> bool:
    """True if `point` decompresses to a valid Ed25519 curve point."""
    if len(point) != PUBKEY_LEN:
        return False
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    if y >= _P:
        return False
    y2 = (y * y) % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = (u * pow(v, _P - 2, _P)) % _P
    if x2 == 0:
        return True
    return pow(x2, (_P - 1) // 2, _P) == 1


@dataclass(frozen=True, slots=True)
class Pubkey:
    """A 32-byte ledger address."""

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != PUBKEY_LEN:
            raise ValueError("pubkey must be exactly 32 bytes")

    @classmethod
    def from_string(cls, s: str) -> "Pubkey":
        """Parse a base58 address. Raises ValueError on anything that is not 32 bytes."""
        if not isinstance(s, str):
            raise ValueError("address must be a string")
        raw = b58decode(s)
        if len(raw) != PUBKEY_LEN:
            raise ValueError(f"address decodes to {len(raw)} bytes, expected {PUBKEY_LEN}")
        return cls(bytes(raw))

    @classmethod
    def default(cls) -> "Pubkey":
        return cls(b"\x00" * PUBKEY_LEN)

    def is_default(self) -> bool:
        return self.raw == b"\x00" * PUBKEY_LEN

    def __str__(self) -> str:
        return b58encode(self.raw)

    def __repr__(self) -> str:
        return f"Pubkey({self})"

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.raw).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


DEFAULT_PUBKEY = Pubkey.default()


def parse_address(value: str) -> Pubkey | None:
    """Parse an address, returning None instead of raising."""
    try:
        return Pubkey.from_string((value or "").strip())
    except ValueError:
        return None


def is_default_address(value: str | Pubkey | None) -> bool:
    if value is None:
        return True
    if isinstance(value, Pubkey):
        return value.is_default()
    pk = parse_address(value)
    return pk is None or pk.is_default()


class Keypair:
    """Ed25519 signing key. The secret never leaves this object except via `to_json_bytes()`."""

    __slots__ = ("_sk", "_pubkey")

    def __init__(self, sk: Ed25519PrivateKey) -> None:
        self._sk = sk
        self._pubkey = Pubkey(sk.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))

    @classmethod
    def generate(cls) -> "Keypair":
        return cls.from_seed(secrets.token_bytes(32))

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        if len(seed) != 32:
            raise ValueError("ed25519 seed must be 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(bytes(seed)))

    @classmethod
    def from_secret(cls, secret: bytes) -> "Keypair":
        """Accept a 32-byte seed or a 64-byte seed||pubkey secret (keypair file layout)."""
        if len(secret) == 64:
            kp = cls.from_seed(secret[:32])
            if kp.pubkey.raw != bytes(secret[32:]):
                raise ValueError("keypair secret does not match its embedded public key")
            return kp
        return cls.from_seed(secret)

    @classmethod
    def from_string(cls, s: str) -> "Keypair":
        """Parse a JSON byte array, base58 or hex encoded secret."""
        s = (s or "").strip()
        if not s:
            raise ValueError("empty keypair")
        if s.startswith("["):
            arr = json.loads(s)
            if not isinstance(arr, list) or not all(isinstance(x, int) and 0 <= x < 256 for x in arr):
                raise ValueError("keypair JSON must be an array of bytes")
            return cls.from_secret(bytes(arr))
        if len(s) in (64, 128):
            try:
                return cls.from_secret(bytes.fromhex(s))
            except ValueError:
                pass
        return cls.from_secret(b58decode(s))

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    def sign(self, message: bytes) -> bytes:
        return self._sk.sign(message)

    def to_json_bytes(self) -> str:
        seed = self._sk.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        return json.dumps(list(seed + self._pubkey.raw))

    def __repr__(self) -> str:
        return f"Keypair(pubkey={self._pubkey})"


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    if len(seeds) > MAX_SEEDS:
        raise ValueError("too many seeds")
    h = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise ValueError("seed exceeds 32 bytes")
        h.update(seed)
    h.update(program_id.raw)
    h.update(_PDA_MARKER)
    digest = h.digest()
    if is_on_curve(digest):
        raise ValueError("derived address is on the curve")
    return Pubkey(digest)


def find_program_address(seeds: Iterable[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Return the first off-curve address searching bump seeds 255 down to 1."""
    base = [bytes(s) for s in seeds]
    for bump in range(255, 0, -1):
        try:
            return create_program_address(base + [bytes([bump])], program_id), bump
        except ValueError:
            continue
    raise ValueError("unable to find a viable program address bump seed")
