"""Stable error taxonomy for Proof Gate.

One exception type is shared by the orchestrator, the platform store and the
HTTP functions. Callers branch on `code`, transports use `http_status`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# Canonicalization / hashing
PG_E_CANON_NON_JSON = "PG_E_CANON_NON_JSON"
PG_E_CANON_DEPTH = "PG_E_CANON_DEPTH"
PG_E_CANON_NONFINITE = "PG_E_CANON_NONFINITE"
PG_E_CANON_KEY_TYPE = "PG_E_CANON_KEY_TYPE"
PG_E_PROOF_TOKEN_INVALID = "PG_E_PROOF_TOKEN_INVALID"

# Auth / access
PG_E_AUTH_REQUIRED = "PG_E_AUTH_REQUIRED"
PG_E_AUTH_INVALID = "PG_E_AUTH_INVALID"
PG_E_FORBIDDEN = "PG_E_FORBIDDEN"
PG_E_RATE_LIMITED = "PG_E_RATE_LIMITED"

# Webhook / tenants
PG_E_TENANT_INVALID = "PG_E_TENANT_INVALID"
PG_E_TENANT_REQUIRED = "PG_E_TENANT_REQUIRED"
PG_E_PAYLOAD_EMPTY = "PG_E_PAYLOAD_EMPTY"
PG_E_DUPLICATE = "PG_E_DUPLICATE"

# Scheduler proxy
PG_E_SCHEDULER_NOT_CONFIGURED = "PG_E_SCHEDULER_NOT_CONFIGURED"
PG_E_SCHEDULER_UPSTREAM = "PG_E_SCHEDULER_UPSTREAM"

# Signing
PG_E_SIGNING_UNAVAILABLE = "PG_E_SIGNING_UNAVAILABLE"

# Orchestration
PG_E_BACKEND_TRANSPORT = "PG_E_BACKEND_TRANSPORT"
PG_E_CONTRADICTION = "PG_E_CONTRADICTION"
PG_E_PACK_FINALIZED = "PG_E_PACK_FINALIZED"

# Generic
PG_E_BAD_REQUEST = "PG_E_BAD_REQUEST"
PG_E_STORAGE = "PG_E_STORAGE"
PG_E_INTERNAL = "PG_E_INTERNAL"

# Postgres unique_violation, kept so callers can match the hosted backend.
UNIQUE_VIOLATION = "23505"


@dataclass
class ProofGateError(Exception):
    """Base Proof Gate exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def as_response(self) -> Dict[str, Any]:
        """Body shape used by the HTTP functions: `{"error": ..., "code": ...}`."""
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class BackendError(ProofGateError):
    """Transport failure talking to the remote RPC / functions backend."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None):
        details: Dict[str, Any] = {}
        if status is not None:
            details["status"] = int(status)
        if body is not None:
            details["body"] = body
        super().__init__(
            code=PG_E_BACKEND_TRANSPORT,
            message=message,
            retryable=True,
            http_status=502,
            details=details,
        )

    @property
    def status(self) -> Optional[int]:
        return self.details.get("status")


class DuplicateKeyError(ProofGateError):
    """Unique constraint violation, reported with the Postgres code 23505."""

    def __init__(self, message: str, *, constraint: str = ""):
        super().__init__(
            code=PG_E_DUPLICATE,
            message=message,
            http_status=409,
            details={"pg_code": UNIQUE_VIOLATION, "constraint": constraint},
        )

    @property
    def pg_code(self) -> str:
        return UNIQUE_VIOLATION


class ProofGateAborted(ProofGateError):
    """Raised when a step whose failure must stop the run fails.

    The partially built pack and the step records travel with the exception so
    the caller can still render what ran.
    """

    def __init__(self, step_id: str, reason: str, *, pack: Any = None, records: Optional[List[Any]] = None):
        super().__init__(
            code=PG_E_CONTRADICTION if step_id == "contradiction_detector" else PG_E_INTERNAL,
            message=f"{step_id}: {reason}",
            http_status=409,
            details={"step_id": step_id},
        )
        self.step_id = step_id
        self.reason = reason
        self.pack = pack
        self.records = list(records or [])


def proof_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> ProofGateError:
    return ProofGateError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
