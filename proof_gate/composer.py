"""Evidence Pack Composer.

Turns the run's step records and the pack's side-channel data into the
hashed, tokenized artifact. Hashing happens before validation so a failing
pack still carries a token that later audits can correlate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .crypto import generate_proof_token, hash_object
from .evidence_pack import EvidencePack, ProofKernel
from .recorder import StepRecord, summarize_runs
from .signing import ProofSignature, ProofSigner

logger = logging.getLogger("proof_gate.composer")


@dataclass
class ComposedPack:
    pack: EvidencePack
    pack_hash: str
    proof_token: str
    signature: Optional[ProofSignature] = None
    signing_error: Optional[str] = None

    @property
    def is_signed(self) -> bool:
        return self.signature is not None


def compute_pack_hash(pack: EvidencePack) -> str:
    return hash_object(pack.hashable_content())


def compute_proof_token(pack: EvidencePack) -> str:
    return generate_proof_token(pack.hashable_content(), pack.timestamp)


async def compose_evidence_pack(
    pack: EvidencePack,
    records: List[StepRecord],
    signer: Optional[ProofSigner] = None,
) -> ComposedPack:
    """Fill `runs`, hash the pack, mint the token, optionally sign.

    Signing is best-effort: any failure leaves `signature` as None and the
    reason in `signing_error`.
    """
    pack.runs = summarize_runs(records)
    pack_hash = compute_pack_hash(pack)
    token = compute_proof_token(pack)

    signature: Optional[ProofSignature] = None
    signing_error: Optional[str] = None
    if signer is not None:
        try:
            result = await signer.sign(token, pack_hash)
            signature, signing_error = result.signature, result.error
        except Exception as e:
            logger.warning("proof signing raised: %s", e)
            signing_error = f"{type(e).__name__}: {e}"

    pack.proof_token = token
    pack.proof_kernel = ProofKernel(
        proof_token=token,
        pack_hash=pack_hash,
        signature=signature,
        signing_error=signing_error,
        run_log=[r.to_dict() for r in records],
    )
    return ComposedPack(pack=pack, pack_hash=pack_hash, proof_token=token, signature=signature, signing_error=signing_error)


def verify_pack_token(pack: EvidencePack) -> bool:
    """Recompute the token from the pack content and compare."""
    if not pack.proof_token:
        return False
    return pack.proof_token == compute_proof_token(pack)
