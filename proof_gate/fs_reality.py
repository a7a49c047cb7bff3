"""Filesystem Reality Check and claim contradiction detection.

The reality check proves that the modules the gate depends on actually import
and that their files are on disk. Its result is compared against two stored
artifacts: a free-text claim log (what someone asserted about the tree) and
the previous run's result. Disagreement is a contradiction.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import GateConfig
from .crypto import _iso_utc
from .state import KEY_BUILD_OUTPUT, KEY_CLAIM_LOG, KEY_FS_CHECK, StateStore

logger = logging.getLogger("proof_gate.fs_reality")

PACKAGE_ROOT = Path(__file__).resolve().parent

# (id, importable module)
CRITICAL_IMPORTS: Sequence[Tuple[str, str]] = (
    ("evidence_pack", "proof_gate.evidence_pack"),
    ("registry", "proof_gate.registry"),
    ("route_audit", "proof_gate.route_audit"),
    ("support_bundle", "proof_gate.support_bundle"),
    ("validator", "proof_gate.validator"),
    ("composer", "proof_gate.composer"),
    ("recorder", "proof_gate.recorder"),
    ("orchestrator", "proof_gate.orchestrator"),
)

CRITICAL_PATHS: Sequence[str] = (
    "evidence_pack.py",
    "registry.py",
    "route_audit.py",
    "support_bundle.py",
    "validator.py",
    "schemas/evidence_pack.schema.json",
)

NOT_EXIST_PHRASES: Sequence[str] = (
    "does not exist",
    "do not exist",
    "not found",
    "cannot be read",
    "file not found",
    "module not found",
)

PREVIEW_CHARS = 200


@dataclass
class ImportCheck:
    id: str
    specifier: str
    ok: bool
    error_message: Optional[str] = None


@dataclass
class FSRealityCheckResult:
    timestamp: str
    critical_paths: List[str]
    missing_paths: List[str]
    import_checks: List[ImportCheck]
    env: Dict[str, Any]
    build_output_present: bool
    build_output_text_preview: str
    all_imports_ok: bool
    failed_imports: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FSRealityCheckResult":
        checks = [
            ImportCheck(
                id=str(c.get("id", "")),
                specifier=str(c.get("specifier", "")),
                ok=bool(c.get("ok")),
                error_message=c.get("error_message"),
            )
            for c in data.get("import_checks") or []
            if isinstance(c, dict)
        ]
        return cls(
            timestamp=str(data.get("timestamp", "")),
            critical_paths=list(data.get("critical_paths") or []),
            missing_paths=list(data.get("missing_paths") or []),
            import_checks=checks,
            env=dict(data.get("env") or {}),
            build_output_present=bool(data.get("build_output_present")),
            build_output_text_preview=str(data.get("build_output_text_preview") or ""),
            all_imports_ok=bool(data.get("all_imports_ok")),
            failed_imports=list(data.get("failed_imports") or []),
        )


# ---------------------------
# Build output / claim log
# ---------------------------

def save_build_output(store: StateStore, text: str) -> None:
    store.set(KEY_BUILD_OUTPUT, {"timestamp": _iso_utc(), "text": str(text)})


def load_build_output(store: StateStore) -> str:
    data = store.get(KEY_BUILD_OUTPUT)
    if isinstance(data, dict):
        return str(data.get("text") or "")
    return ""


def get_build_output_meta(store: StateStore) -> Optional[Dict[str, Any]]:
    data = store.get(KEY_BUILD_OUTPUT)
    if not isinstance(data, dict):
        return None
    return {"timestamp": data.get("timestamp") or "(unknown)", "length": len(str(data.get("text") or ""))}


def clear_build_output(store: StateStore) -> None:
    store.delete(KEY_BUILD_OUTPUT)


def save_claim_log(store: StateStore, text: str) -> None:
    store.set(KEY_CLAIM_LOG, {"timestamp": _iso_utc(), "text": str(text)})


def load_claim_log(store: StateStore) -> str:
    data = store.get(KEY_CLAIM_LOG)
    if isinstance(data, dict):
        return str(data.get("text") or "")
    return ""


def clear_claim_log(store: StateStore) -> None:
    store.delete(KEY_CLAIM_LOG)


def store_fs_reality_check(store: StateStore, result: FSRealityCheckResult) -> None:
    store.set(KEY_FS_CHECK, result.to_dict())


def load_stored_fs_reality_check(store: StateStore) -> Optional[FSRealityCheckResult]:
    data = store.get(KEY_FS_CHECK)
    if not isinstance(data, dict):
        return None
    return FSRealityCheckResult.from_dict(data)


# ---------------------------
# Reality check
# ---------------------------

def _env_info(config: GateConfig) -> Dict[str, Any]:
    from . import __version__

    return {
        "app_version": config.app_version or __version__,
        "build_timestamp": config.build_timestamp or "(missing)",
        "commit_sha": config.commit_sha or "(missing)",
        "backend_url_present": bool(config.backend_url),
        "backend_key_present": bool(config.backend_key),
    }


def run_fs_reality_check(
    store: StateStore,
    config: GateConfig,
    *,
    imports: Sequence[Tuple[str, str]] = CRITICAL_IMPORTS,
    paths: Sequence[str] = CRITICAL_PATHS,
    root: Path = PACKAGE_ROOT,
) -> FSRealityCheckResult:
    """Probe critical imports and paths. Does not persist the result."""
    checks: List[ImportCheck] = []
    for check_id, module in imports:
        try:
            importlib.import_module(module)
            checks.append(ImportCheck(id=check_id, specifier=module, ok=True))
        except Exception as e:
            logger.warning("critical import %s failed: %s", module, e)
            checks.append(ImportCheck(id=check_id, specifier=module, ok=False, error_message=f"{type(e).__name__}: {e}"))

    missing = [p for p in paths if not (root / p).exists()]
    build_output = load_build_output(store)
    preview = build_output[:PREVIEW_CHARS] + ("..." if len(build_output) > PREVIEW_CHARS else "")
    failed = [c.id for c in checks if not c.ok]

    return FSRealityCheckResult(
        timestamp=_iso_utc(),
        critical_paths=list(paths),
        missing_paths=missing,
        import_checks=checks,
        env=_env_info(config),
        build_output_present=bool(build_output),
        build_output_text_preview=preview,
        all_imports_ok=not failed,
        failed_imports=failed,
    )


# ---------------------------
# Contradictions
# ---------------------------

def detect_claim_contradictions(claim_log: str, fs_result: FSRealityCheckResult) -> Dict[str, Any]:
    contradictions: List[str] = []
    claim = (claim_log or "").lower()

    if fs_result.all_imports_ok:
        for phrase in NOT_EXIST_PHRASES:
            if phrase in claim:
                contradictions.append(f'Claim contains "{phrase}" but all critical imports succeeded')

    says_missing = "not exist" in claim or "not found" in claim
    if says_missing:
        for check in fs_result.import_checks:
            if check.ok and check.id.lower() in claim:
                contradictions.append(f'Claim mentions "{check.id}" not existing, but import succeeded')

    return {"has_contradiction": bool(contradictions), "contradictions": contradictions}


def compare_fs_results(previous: Optional[FSRealityCheckResult], current: FSRealityCheckResult) -> Dict[str, Any]:
    if previous is None:
        return {"has_contradiction": False, "details": []}

    details: List[str] = []
    if previous.all_imports_ok and not current.all_imports_ok:
        details.append(
            "Regression: previous check had all imports OK, current has failures: "
            + ", ".join(current.failed_imports)
        )

    prev_by_id = {c.id: c for c in previous.import_checks}
    for cur in current.import_checks:
        prev = prev_by_id.get(cur.id)
        if prev is not None and prev.ok != cur.ok:
            details.append(
                f'Import "{cur.id}" changed: was {"OK" if prev.ok else "FAILED"}, now {"OK" if cur.ok else "FAILED"}'
            )

    return {"has_contradiction": bool(details), "details": details}
