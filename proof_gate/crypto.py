"""Canonical hashing, proof tokens and Ed25519 keys.

Proof tokens look like ``PROOF-20261018093000-3FA9C0D1B2E4F567``: the pack
timestamp compressed to 14 digits followed by the first 16 hex characters of
the pack's canonical SHA-256 (uppercase).
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import (
    ProofGateError,
    proof_error,
    PG_E_CANON_DEPTH,
    PG_E_CANON_KEY_TYPE,
    PG_E_CANON_NONFINITE,
    PG_E_CANON_NON_JSON,
    PG_E_PROOF_TOKEN_INVALID,
)

PROOF_TOKEN_PREFIX = "PROOF"
_TOKEN_RE = re.compile(r"^PROOF-(\d{14})-([0-9A-F]{16})$")
_TS_STRIP_RE = re.compile(r"[-:TZ.+]")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(dt: Optional[datetime] = None) -> str:
    """Millisecond-precision UTC timestamp with a `Z` suffix."""
    dt = (dt or _now_utc()).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime; None if unparseable."""
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash/sign inputs.
    Prevents delimiter collisions between adjacent components.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


_CANON_MAX_DEPTH = 64


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise proof_error(PG_E_CANON_DEPTH, "max nesting depth exceeded", path=_path)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise proof_error(PG_E_CANON_NONFINITE, "non-finite float", path=_path)
        return obj
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise proof_error(PG_E_CANON_KEY_TYPE, "dict key must be str", path=_path, got=type(k).__name__)
            nk = unicodedata.normalize("NFC", k)
            out[nk] = _canonicalize(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise proof_error(PG_E_CANON_NON_JSON, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON.

    Unknown types, NaN and non-string keys raise ProofGateError instead of
    being coerced, so a hash is never computed over something another
    verifier could not re-encode.
    """
    normalized = _canonicalize(obj)
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def hash_object(obj: Any) -> str:
    """Uppercase hex SHA-256 over the strict canonical JSON of `obj`."""
    return _sha256_hex(canonical_json_dumps(obj).encode("utf-8")).upper()


def _timestamp_digits(timestamp: str) -> str:
    digits = _TS_STRIP_RE.sub("", str(timestamp or ""))[:14]
    if len(digits) != 14 or not digits.isdigit():
        raise proof_error(PG_E_PROOF_TOKEN_INVALID, "timestamp cannot be compressed to 14 digits", timestamp=timestamp)
    return digits


def generate_proof_token(obj: Any, timestamp: str) -> str:
    return f"{PROOF_TOKEN_PREFIX}-{_timestamp_digits(timestamp)}-{hash_object(obj)[:16]}"


def parse_proof_token(token: str) -> Tuple[str, str]:
    """Split a proof token into (ts14, hash16). Raises on malformed input."""
    m = _TOKEN_RE.match(str(token or ""))
    if not m:
        raise proof_error(PG_E_PROOF_TOKEN_INVALID, "malformed proof token", token=token)
    return m.group(1), m.group(2)


def verify_proof_token(token: str, obj: Any, timestamp: str) -> bool:
    try:
        ts14, hash16 = parse_proof_token(token)
        return ts14 == _timestamp_digits(timestamp) and hash16 == hash_object(obj)[:16]
    except ProofGateError:
        return False


def _raw_public(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@dataclass
class Ed25519KeyPair:
    """Ed25519 key pair. `private_key_bytes` is the 32-byte seed when present."""

    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        private_key = Ed25519PrivateKey.generate()
        seed = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cls(key_id=key_id, public_key_bytes=_raw_public(private_key), private_key_bytes=seed)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(key_id=key_id, public_key_bytes=_raw_public(private_key), private_key_bytes=bytes(seed))

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        return cls(key_id=key_id, public_key_bytes=bytes.fromhex(public_key_hex))

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(signature, message)
            return True
        except InvalidSignature:
            return False
        except ValueError:
            return False


def load_signing_key_from_env(
    key_id: str,
    *,
    seed_env: str = "PROOF_GATE_SIGNING_KEY",
    file_env: str = "PROOF_GATE_SIGNING_KEY_FILE",
    allow_ephemeral: bool = False,
) -> Optional[Ed25519KeyPair]:
    """Load an Ed25519 seed (hex) from env or a file.

    Returns None when nothing is configured and ephemeral keys are not
    allowed. A configured but malformed seed raises ValueError.
    """
    seed_hex = (os.getenv(seed_env, "") or "").strip()
    seed_file = (os.getenv(file_env, "") or "").strip()
    if not seed_hex and seed_file:
        seed_hex = Path(seed_file).read_text(encoding="utf-8").strip()
    if seed_hex:
        try:
            seed = bytes.fromhex(seed_hex)
        except ValueError as e:
            raise ValueError(f"{seed_env} must be hex") from e
        return Ed25519KeyPair.from_seed(seed, key_id)
    if allow_ephemeral:
        return Ed25519KeyPair.generate(key_id)
    return None
