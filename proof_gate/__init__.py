"""Proof Gate package.

Diagnostics orchestrator and platform functions for a multi-tenant lead
platform:

- Evidence Packs: ordered checks, deterministic proof tokens, validation
- Lead webhook ingestion with per-tenant dedupe and suppression
- Admin-only scheduler proxy with an audit trail
- Tenant-isolation QA harness

Convenience imports are loaded lazily:

    from proof_gate import ProofGate, PlatformGateway, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Read `version = "..."` from a repo-local pyproject.toml, if there is one."""
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "ProofGate",
    "PlatformGateway",
    "PlatformStore",
    "QAHarness",
    "create_app",
    "generate_proof_token",
    "validate_evidence_pack",
]

_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "ProofGate": ("proof_gate.orchestrator", "ProofGate"),
    "PlatformGateway": ("proof_gate.server", "PlatformGateway"),
    "create_app": ("proof_gate.server", "create_app"),
    "PlatformStore": ("proof_gate.store", "PlatformStore"),
    "QAHarness": ("proof_gate.qa", "QAHarness"),
    "generate_proof_token": ("proof_gate.crypto", "generate_proof_token"),
    "validate_evidence_pack": ("proof_gate.validator", "validate_evidence_pack"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'proof_gate' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
