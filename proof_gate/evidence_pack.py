"""Evidence Pack: the canonical record of one Proof Gate run.

The pack is built up step by step during a run, hashed into a proof token by
the composer, validated, and then finalized. After `finalize()` the verdict
cannot be replaced.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .auth import RoleContext
from .crypto import _iso_utc
from .errors import PG_E_PACK_FINALIZED, proof_error
from .signing import ProofSignature
from .state import KEY_EDGE_RUNS, StateStore

QA_AVAILABLE = "available"
QA_DENIED = "denied"
QA_NOT_RUN = "not_run"
QA_STATUSES = (QA_AVAILABLE, QA_DENIED, QA_NOT_RUN)

MAX_EDGE_RUNS = 10
MIN_TOOL_COUNT = 5

# Fields that are derived from the rest of the pack and never hashed.
DERIVED_FIELDS = ("proof_token", "proof_kernel", "validation_result")


def mask_user_id(user_id: Optional[str]) -> str:
    if not user_id:
        return "(unauthenticated)"
    return f"{user_id[:8]}..."


@dataclass
class HumanAction:
    action: str
    location: str
    value: Optional[str] = None
    validation_endpoint: Optional[str] = None
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HumanAction":
        return cls(
            action=str(data.get("action", "")),
            location=str(data.get("location", "")),
            value=data.get("value"),
            validation_endpoint=data.get("validation_endpoint"),
            completed=bool(data.get("completed", False)),
        )


@dataclass
class BuildOutput:
    present: bool = False
    text: str = ""
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class MiniQAResult:
    auth_present: bool
    tool_registry_valid: bool
    route_audit_runnable: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def run_mini_qa(
    *,
    is_authenticated: bool,
    tool_registry_length: int,
    audit_runnable: bool,
    tenant_count: int = 0,
    is_admin: bool = False,
) -> MiniQAResult:
    """Minimal QA used when the full tenant-isolation harness cannot run."""
    errors: List[str] = []
    warnings: List[str] = []
    if not is_authenticated:
        errors.append("User is not authenticated")
    if tool_registry_length < MIN_TOOL_COUNT:
        errors.append(f"Tool registry has only {tool_registry_length} tools (expected {MIN_TOOL_COUNT}+)")
    if not audit_runnable:
        errors.append("Route audit function is not runnable")
    if tenant_count == 0:
        warnings.append("No tenants sampled")
    if not is_admin:
        warnings.append("Caller is not an admin; isolation tests limited")
    return MiniQAResult(
        auth_present=is_authenticated,
        tool_registry_valid=tool_registry_length >= MIN_TOOL_COUNT,
        route_audit_runnable=audit_runnable,
        errors=errors,
        warnings=warnings,
    )


@dataclass
class ValidationResult:
    ok: bool
    errors: List[str]
    warnings: List[str]
    required_actions: List[HumanAction]
    validation_timestamp: str
    checks_performed: List[str]
    proof_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["required_actions"] = [a.to_dict() for a in self.required_actions]
        return d


@dataclass
class ProofKernel:
    proof_token: str
    pack_hash: str
    signature: Optional[ProofSignature] = None
    signing_error: Optional[str] = None
    validator_result: Optional[Dict[str, Any]] = None
    run_log: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_signed(self) -> bool:
        return self.signature is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof_token": self.proof_token,
            "pack_hash": self.pack_hash,
            "signature": self.signature.to_dict() if self.signature is not None else None,
            "signing_error": self.signing_error,
            "validator_result": self.validator_result,
            "run_log": list(self.run_log),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofKernel":
        sig = data.get("signature")
        return cls(
            proof_token=str(data.get("proof_token") or ""),
            pack_hash=str(data.get("pack_hash") or ""),
            signature=ProofSignature.from_dict(sig) if isinstance(sig, dict) else None,
            signing_error=data.get("signing_error"),
            validator_result=data.get("validator_result"),
            run_log=list(data.get("run_log") or []),
        )


@dataclass
class EdgeConsoleRun:
    timestamp: str
    function_name: str
    request: Dict[str, Any]
    response: Dict[str, Any]
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def save_edge_run(store: StateStore, run: EdgeConsoleRun) -> None:
    """Record a run, newest first, keeping the last MAX_EDGE_RUNS."""
    runs = store.get(KEY_EDGE_RUNS, []) or []
    if not isinstance(runs, list):
        runs = []
    runs.insert(0, run.to_dict())
    store.set(KEY_EDGE_RUNS, runs[:MAX_EDGE_RUNS])


def load_edge_runs(store: StateStore) -> List[Dict[str, Any]]:
    runs = store.get(KEY_EDGE_RUNS, []) or []
    return [r for r in runs if isinstance(r, dict)] if isinstance(runs, list) else []


def get_latest_edge_run(store: StateStore) -> Optional[Dict[str, Any]]:
    runs = load_edge_runs(store)
    return runs[0] if runs else None


@dataclass
class EvidencePack:
    timestamp: str
    current_route: str
    user_id_masked: str
    role_flags: Dict[str, bool]
    app_version: str = ""
    build_timestamp: str = ""
    tenant_ids: List[str] = field(default_factory=list)

    nav_routes_visible: List[str] = field(default_factory=list)
    tool_registry_snapshot: List[Dict[str, Any]] = field(default_factory=list)
    route_guard_snapshot: List[Dict[str, Any]] = field(default_factory=list)

    access_snapshot: Optional[Dict[str, Any]] = None
    fs_reality_check: Optional[Dict[str, Any]] = None
    build_output: BuildOutput = field(default_factory=BuildOutput)
    contradiction: Optional[Dict[str, Any]] = None
    route_nav_audit: Optional[Dict[str, Any]] = None
    db_doctor: Optional[Dict[str, Any]] = None
    edge_preflight: Optional[Dict[str, Any]] = None
    qa_access_status: str = QA_NOT_RUN
    qa_debug_json: Any = None
    mini_qa: Optional[MiniQAResult] = None
    latest_edge_console_run: Optional[Dict[str, Any]] = None

    recurring_issue_counts: Dict[str, int] = field(default_factory=dict)
    human_actions_required: List[HumanAction] = field(default_factory=list)
    runs: List[Dict[str, Any]] = field(default_factory=list)

    proof_token: Optional[str] = None
    proof_kernel: Optional[ProofKernel] = None
    validation_result: Optional[ValidationResult] = None

    @classmethod
    def create(
        cls,
        ctx: RoleContext,
        current_route: str,
        *,
        app_version: str = "",
        build_timestamp: str = "",
        tenant_ids: Optional[List[str]] = None,
    ) -> "EvidencePack":
        return cls(
            timestamp=_iso_utc(),
            current_route=current_route,
            user_id_masked=mask_user_id(ctx.user_id),
            role_flags=ctx.role_flags(),
            app_version=app_version,
            build_timestamp=build_timestamp,
            tenant_ids=list(tenant_ids or []),
        )

    @property
    def is_finalized(self) -> bool:
        return self.validation_result is not None

    def add_human_action(self, action: str, location: str, value: Optional[str] = None, **extra: Any) -> HumanAction:
        item = HumanAction(action=action, location=location, value=value, **extra)
        self.human_actions_required.append(item)
        return item

    def finalize(self, validation: ValidationResult) -> None:
        if self.validation_result is not None:
            raise proof_error(PG_E_PACK_FINALIZED, "validation_result is already set", http_status=409)
        self.validation_result = validation
        if self.proof_kernel is not None:
            self.proof_kernel.validator_result = {
                "ok": validation.ok,
                "errors": len(validation.errors),
                "warnings": len(validation.warnings),
                "validation_timestamp": validation.validation_timestamp,
            }

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            v = getattr(self, f.name)
            if f.name == "human_actions_required":
                d[f.name] = [a.to_dict() for a in v]
            elif v is not None and hasattr(v, "to_dict"):
                d[f.name] = v.to_dict()
            elif isinstance(v, (dict, list)):
                d[f.name] = _plain(v)
            else:
                d[f.name] = v
        return d

    def hashable_content(self) -> Dict[str, Any]:
        d = self.to_dict()
        for name in DERIVED_FIELDS:
            d.pop(name, None)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidencePack":
        bo = data.get("build_output") or {}
        mq = data.get("mini_qa")
        pk = data.get("proof_kernel")
        vr = data.get("validation_result")
        pack = cls(
            timestamp=str(data.get("timestamp", "")),
            current_route=str(data.get("current_route", "")),
            user_id_masked=str(data.get("user_id_masked", "")),
            role_flags=dict(data.get("role_flags") or {}),
            app_version=str(data.get("app_version") or ""),
            build_timestamp=str(data.get("build_timestamp") or ""),
            tenant_ids=list(data.get("tenant_ids") or []),
            nav_routes_visible=list(data.get("nav_routes_visible") or []),
            tool_registry_snapshot=list(data.get("tool_registry_snapshot") or []),
            route_guard_snapshot=list(data.get("route_guard_snapshot") or []),
            access_snapshot=data.get("access_snapshot"),
            fs_reality_check=data.get("fs_reality_check"),
            build_output=BuildOutput(
                present=bool(bo.get("present")),
                text=str(bo.get("text") or ""),
                meta=bo.get("meta"),
            ),
            contradiction=data.get("contradiction"),
            route_nav_audit=data.get("route_nav_audit"),
            db_doctor=data.get("db_doctor"),
            edge_preflight=data.get("edge_preflight"),
            qa_access_status=str(data.get("qa_access_status") or QA_NOT_RUN),
            qa_debug_json=data.get("qa_debug_json"),
            mini_qa=MiniQAResult(
                auth_present=bool(mq.get("auth_present")),
                tool_registry_valid=bool(mq.get("tool_registry_valid")),
                route_audit_runnable=bool(mq.get("route_audit_runnable")),
                errors=list(mq.get("errors") or []),
                warnings=list(mq.get("warnings") or []),
            ) if isinstance(mq, dict) else None,
            latest_edge_console_run=data.get("latest_edge_console_run"),
            recurring_issue_counts={str(k): int(v) for k, v in (data.get("recurring_issue_counts") or {}).items()},
            human_actions_required=[HumanAction.from_dict(a) for a in data.get("human_actions_required") or []],
            runs=list(data.get("runs") or []),
            proof_token=data.get("proof_token"),
            proof_kernel=ProofKernel.from_dict(pk) if isinstance(pk, dict) else None,
        )
        if isinstance(vr, dict):
            pack.validation_result = ValidationResult(
                ok=bool(vr.get("ok")),
                errors=list(vr.get("errors") or []),
                warnings=list(vr.get("warnings") or []),
                required_actions=[HumanAction.from_dict(a) for a in vr.get("required_actions") or []],
                validation_timestamp=str(vr.get("validation_timestamp") or ""),
                checks_performed=list(vr.get("checks_performed") or []),
                proof_token=vr.get("proof_token"),
            )
        return pack


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value
