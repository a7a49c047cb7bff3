"""Legacy support bundle.

The bundle predates the Evidence Pack: a flat diagnostic snapshot with no
token, no validator and no signature, meant to be pasted into a support
thread. Its flow is shorter than the Proof Gate's and every step is
best-effort.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .auth import RoleContext
from .backend import FunctionsClient, RpcClient
from .config import GateConfig
from .crypto import _iso_utc
from .errors import BackendError
from .evidence_pack import EdgeConsoleRun, HumanAction, mask_user_id, save_edge_run
from .recorder import RecorderContext, StepOutcome, StepRecord, run_with_proof
from .route_audit import run_route_nav_audit
from .state import StateStore
from .steps import DEPENDENCY_CHECK_RPC
from .store import PlatformStore

logger = logging.getLogger("proof_gate.support_bundle")

NORMALIZE_FUNCTION = "lead-webhook"
AUDIT_LOG_SAMPLE = 20


@dataclass
class PreflightReport:
    ok: bool
    suspects: List[Dict[str, Any]] = field(default_factory=list)
    suspect_count: int = 0
    error: Optional[str] = None

    @classmethod
    def from_data(cls, data: Any) -> "PreflightReport":
        if not isinstance(data, dict):
            return cls(ok=False, error="unexpected report shape")
        suspects = [s for s in data.get("suspects") or [] if isinstance(s, dict)]
        return cls(
            ok=data.get("ok") is True,
            suspects=suspects,
            suspect_count=int(data.get("suspect_count", len(suspects)) or 0),
            error=data.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class SupportBundle:
    timestamp: str
    current_route: str
    user_id_masked: str
    role_flags: Dict[str, bool]
    tenant_ids: List[str] = field(default_factory=list)
    db_doctor: Optional[PreflightReport] = None
    edge_preflight: Optional[PreflightReport] = None
    normalize_test: Optional[Dict[str, Any]] = None
    route_audit: Optional[Dict[str, Any]] = None
    recent_audit_logs: List[Dict[str, Any]] = field(default_factory=list)
    human_actions_required: List[HumanAction] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "current_route": self.current_route,
            "user_id_masked": self.user_id_masked,
            "role_flags": dict(self.role_flags),
            "tenant_ids": list(self.tenant_ids),
            "db_doctor": self.db_doctor.to_dict() if self.db_doctor else None,
            "edge_preflight": self.edge_preflight.to_dict() if self.edge_preflight else None,
            "normalize_test": self.normalize_test,
            "route_audit": self.route_audit,
            "recent_audit_logs": list(self.recent_audit_logs),
            "human_actions_required": [a.to_dict() for a in self.human_actions_required],
        }


class SupportBundleRunner:
    def __init__(
        self,
        config: GateConfig,
        state: StateStore,
        *,
        store: Optional[PlatformStore] = None,
        rpc: Optional[RpcClient] = None,
        functions: Optional[FunctionsClient] = None,
    ):
        self.config = config
        self.state = state
        self.store = store
        self.rpc = rpc
        self.functions = functions

    async def run(self, role: RoleContext, current_route: str = "/platform/proof-gate") -> Tuple[SupportBundle, List[StepRecord]]:
        bundle = SupportBundle(
            timestamp=_iso_utc(),
            current_route=current_route,
            user_id_masked=mask_user_id(role.user_id),
            role_flags=role.role_flags(),
            tenant_ids=self.store.list_tenant_ids(limit=5) if self.store is not None else [],
        )
        ctx = RecorderContext()

        steps = (
            ("db_doctor", lambda: self._db_doctor(bundle)),
            ("edge_preflight", lambda: self._edge_preflight(bundle)),
            ("normalize_test", lambda: self._normalize_test(bundle)),
            ("route_audit", lambda: self._route_audit(bundle, role)),
            ("audit_logs", lambda: self._audit_logs(bundle)),
        )
        for step_id, fn in steps:
            try:
                await run_with_proof(ctx, step_id, fn)
            except Exception as e:
                logger.warning("support bundle step %s failed: %s", step_id, e)

        if bundle.db_doctor is not None and bundle.db_doctor.suspect_count > 0:
            bundle.human_actions_required.append(HumanAction(
                action="Run Fix SQL",
                location="database SQL console",
                value="\n\n".join(str(s.get("fix_sql", "")) for s in bundle.db_doctor.suspects),
            ))
        bundle.timestamp = _iso_utc()
        return bundle, list(ctx.records)

    async def _db_doctor(self, bundle: SupportBundle) -> StepOutcome:
        if self.rpc is None:
            bundle.db_doctor = PreflightReport(ok=False, error="No RPC client configured")
            return StepOutcome.skipped("No RPC client configured")
        try:
            bundle.db_doctor = PreflightReport.from_data(await self.rpc.rpc(DEPENDENCY_CHECK_RPC))
        except BackendError as e:
            bundle.db_doctor = PreflightReport(ok=False, error=e.message)
            return StepOutcome.failed(e.message)
        if not bundle.db_doctor.ok:
            return StepOutcome.failed(f"{bundle.db_doctor.suspect_count} suspect(s)", bundle.db_doctor)
        return StepOutcome.passed(bundle.db_doctor)

    async def _edge_preflight(self, bundle: SupportBundle) -> StepOutcome:
        if self.functions is None:
            bundle.edge_preflight = PreflightReport(ok=False, error="No functions client configured")
            return StepOutcome.skipped("No functions client configured")
        try:
            resp = await self.functions.invoke(self.config.preflight_function, {"mode": "preflight"})
        except BackendError as e:
            bundle.edge_preflight = PreflightReport(ok=False, error=e.message)
            return StepOutcome.failed(e.message)
        data = resp.data if isinstance(resp.data, dict) else {}
        bundle.edge_preflight = PreflightReport.from_data(data.get("report") if isinstance(data.get("report"), dict) else data)
        if not bundle.edge_preflight.ok:
            return StepOutcome.failed(f"Preflight not ok (HTTP {resp.status})", bundle.edge_preflight)
        return StepOutcome.passed(bundle.edge_preflight)

    async def _normalize_test(self, bundle: SupportBundle) -> StepOutcome:
        deps_ok = bool(bundle.db_doctor and bundle.db_doctor.ok and bundle.edge_preflight and bundle.edge_preflight.ok)
        if not deps_ok or not bundle.tenant_ids or self.functions is None:
            bundle.normalize_test = {"skipped": True, "reason": "Dependencies not OK or no tenants"}
            return StepOutcome.skipped("Dependencies not OK or no tenants")

        body = {"email": f"proof_gate_{int(time.time() * 1000)}@test.local", "phone": "5550000001", "source": "proof_gate"}
        headers = {"X-Tenant-Id": bundle.tenant_ids[0]}
        start = time.monotonic()
        resp = await self.functions.invoke(NORMALIZE_FUNCTION, body, headers=headers)
        duration_ms = int((time.monotonic() - start) * 1000)
        save_edge_run(self.state, EdgeConsoleRun(
            timestamp=_iso_utc(),
            function_name=NORMALIZE_FUNCTION,
            request={"method": "POST", "headers": {"X-Tenant-Id": "..."}, "body": {"lead": "..."}},
            response={"status": resp.status, "body": resp.data},
            duration_ms=duration_ms,
        ))
        bundle.normalize_test = {"status": resp.status, "response": resp.data}
        if not resp.ok:
            return StepOutcome.failed(f"{NORMALIZE_FUNCTION} returned {resp.status}", bundle.normalize_test)
        return StepOutcome.passed(bundle.normalize_test)

    async def _route_audit(self, bundle: SupportBundle, role: RoleContext) -> StepOutcome:
        result = run_route_nav_audit(role)
        bundle.route_audit = result.to_dict()
        if result.findings:
            return StepOutcome.failed(f"{len(result.findings)} finding(s)", result.summary)
        return StepOutcome.passed(result.summary)

    async def _audit_logs(self, bundle: SupportBundle) -> StepOutcome:
        if self.store is None:
            return StepOutcome.skipped("No access to audit logs")
        bundle.recent_audit_logs = self.store.recent_platform_audit_log(limit=AUDIT_LOG_SAMPLE)
        return StepOutcome.passed({"count": len(bundle.recent_audit_logs)})
