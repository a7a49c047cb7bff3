"""
proof_gate.signing: optional signatures over proof tokens.

A signature binds ``(proof_token, pack_hash)`` with Ed25519. Signing is
best-effort: every proof signer returns a `SigningResult` whose `signature` is
``None`` when signing was unavailable, so callers branch on presence rather
than trusting a badge.

Backends:
- LocalProofSigner: in-process signing with a `Signer`.
- HttpProofSigner: delegates to the ``proof-sign`` HTTP function.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from .backend import FunctionsClient, HttpBackendClient
from .config import GateConfig
from .crypto import Ed25519KeyPair, _iso_utc, _safe_hash_encode, load_signing_key_from_env
from .errors import BackendError

logger = logging.getLogger("proof_gate.signing")

SIGNATURE_ALGORITHM = "ed25519"


def signing_message(proof_token: str, pack_hash: str) -> bytes:
    return _safe_hash_encode([str(proof_token), str(pack_hash)])


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by raw signing backends."""
    key_id: str
    public_key_bytes: bytes

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class FileEd25519Signer:
    """Signer that wraps an Ed25519KeyPair (in-process signing)."""
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    @property
    def public_key_hex(self) -> str:
        return self.keypair.public_key_hex

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)


@dataclass(frozen=True)
class ProofSignature:
    signature: str
    signed_at: str
    key_id: str
    algorithm: str = SIGNATURE_ALGORITHM

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofSignature":
        return cls(
            signature=str(data["signature"]),
            signed_at=str(data.get("signed_at") or ""),
            key_id=str(data.get("key_id") or ""),
            algorithm=str(data.get("algorithm") or SIGNATURE_ALGORITHM),
        )


@dataclass(frozen=True)
class SigningResult:
    signature: Optional[ProofSignature] = None
    error: Optional[str] = None

    @property
    def signed(self) -> bool:
        return self.signature is not None


@runtime_checkable
class ProofSigner(Protocol):
    async def sign(self, proof_token: str, pack_hash: str) -> SigningResult: ...


def sign_proof(signer: Signer, proof_token: str, pack_hash: str) -> ProofSignature:
    raw = signer.sign(signing_message(proof_token, pack_hash))
    return ProofSignature(
        signature=base64.b64encode(raw).decode("ascii"),
        signed_at=_iso_utc(),
        key_id=signer.key_id,
    )


def verify_proof_signature(
    public_key: Ed25519KeyPair,
    proof_token: str,
    pack_hash: str,
    signature: ProofSignature,
) -> bool:
    """Check a signature against both the token and the pack hash."""
    if signature.algorithm != SIGNATURE_ALGORITHM:
        return False
    try:
        raw = base64.b64decode(signature.signature.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError):
        return False
    return public_key.verify(signing_message(proof_token, pack_hash), raw)


@dataclass
class LocalProofSigner:
    signer: Signer

    async def sign(self, proof_token: str, pack_hash: str) -> SigningResult:
        try:
            return SigningResult(signature=sign_proof(self.signer, proof_token, pack_hash))
        except Exception as e:
            logger.warning("local proof signing failed: %s", e)
            return SigningResult(error=f"{type(e).__name__}: {e}")


@dataclass
class HttpProofSigner:
    """Requests a signature from the ``proof-sign`` function."""

    client: FunctionsClient
    function_name: str = "proof-sign"

    async def sign(self, proof_token: str, pack_hash: str) -> SigningResult:
        try:
            resp = await self.client.invoke(self.function_name, {"proof_token": proof_token, "pack_hash": pack_hash})
        except BackendError as e:
            logger.warning("proof-sign unreachable: %s", e.message)
            return SigningResult(error=e.message)
        data = resp.data if isinstance(resp.data, dict) else {}
        if not resp.ok or not data.get("signature"):
            err = data.get("error") or f"HTTP {resp.status}"
            logger.warning("proof-sign refused: %s", err)
            return SigningResult(error=str(err))
        return SigningResult(signature=ProofSignature.from_dict(data))


def build_proof_signer(config: GateConfig) -> Optional[ProofSigner]:
    """Pick the proof signer named by PROOF_GATE_SIGNING_MODE.

    ``off`` yields None. ``local`` needs a key (or the ephemeral opt-in).
    ``remote`` needs PROOF_GATE_BACKEND_URL.
    """
    mode = config.signing_mode
    if mode == "local":
        keypair = load_signing_key_from_env(config.signing_key_id, allow_ephemeral=config.allow_ephemeral_signing_key)
        if keypair is None:
            raise RuntimeError(
                "PROOF_GATE_SIGNING_MODE=local requires PROOF_GATE_SIGNING_KEY or PROOF_GATE_SIGNING_KEY_FILE "
                "(or PROOF_GATE_ALLOW_EPHEMERAL_SIGNING_KEY=1 for dev/test)"
            )
        return LocalProofSigner(FileEd25519Signer(keypair))
    if mode == "remote":
        if not config.backend_url:
            raise RuntimeError("PROOF_GATE_SIGNING_MODE=remote requires PROOF_GATE_BACKEND_URL")
        return HttpProofSigner(HttpBackendClient.from_config(config))
    return None
