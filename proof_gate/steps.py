"""Proof Gate check steps.

Every step takes the shared `RunState`, writes its side-channel data onto the
pack, and returns a tagged `StepOutcome`. Steps never decide whether the run
continues; the orchestrator does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .auth import RoleContext
from .backend import FunctionsClient, RpcClient
from .config import GateConfig
from .errors import BackendError
from .evidence_pack import QA_AVAILABLE, QA_DENIED, QA_NOT_RUN, BuildOutput, EvidencePack, run_mini_qa, get_latest_edge_run
from .fs_reality import (
    FSRealityCheckResult,
    compare_fs_results,
    detect_claim_contradictions,
    get_build_output_meta,
    load_build_output,
    load_claim_log,
    run_fs_reality_check,
)
from .issue_counts import RecurringIssueCounts
from .qa import QAHarness
from .recorder import StepOutcome, safe_json_serialize
from .registry import ROUTE_GUARDS, TOOLS
from .route_audit import run_route_nav_audit
from .state import StateStore

logger = logging.getLogger("proof_gate.steps")

DEPENDENCY_CHECK_RPC = "qa_dependency_check"
REMOTE_DATA_DEPTH = 10


def _remote_json(data: Any) -> Any:
    """Remote replies may carry NaN or Infinity; the pack hash rejects both."""
    return safe_json_serialize(data, max_depth=REMOTE_DATA_DEPTH)


@dataclass
class RunState:
    """Everything one run's steps share. Mutated strictly in step order."""

    pack: EvidencePack
    role: RoleContext
    config: GateConfig
    state: StateStore
    counts: RecurringIssueCounts
    rpc: Optional[RpcClient] = None
    functions: Optional[FunctionsClient] = None
    qa_harness: Optional[QAHarness] = None
    previous_fs: Optional[FSRealityCheckResult] = None
    fs_result: Optional[FSRealityCheckResult] = None


async def access_snapshot(run: RunState) -> StepOutcome:
    ctx = run.role
    snap = {
        "authenticated": ctx.is_authenticated,
        "role": ctx.role,
        "isOwner": ctx.is_owner,
        "isAdmin": ctx.is_admin,
        "isClient": ctx.is_client,
        "user_id_masked": run.pack.user_id_masked,
    }
    run.pack.access_snapshot = snap
    if not ctx.is_authenticated:
        return StepOutcome.failed("Not authenticated", snap)
    return StepOutcome.passed(snap)


async def fs_reality_check(run: RunState) -> StepOutcome:
    result = run_fs_reality_check(run.state, run.config)
    run.fs_result = result
    run.pack.fs_reality_check = result.to_dict()
    if not result.all_imports_ok:
        return StepOutcome.failed(f"Failed imports: {', '.join(result.failed_imports)}", result.to_dict())
    return StepOutcome.passed({"all_imports_ok": True, "missing_paths": result.missing_paths})


async def build_verification(run: RunState) -> StepOutcome:
    text = load_build_output(run.state)
    present = bool(text.strip())
    run.pack.build_output = BuildOutput(present=present, text=text, meta=get_build_output_meta(run.state))
    if not present:
        return StepOutcome.failed("No build output saved")
    return StepOutcome.passed({"chars": len(text)})


async def contradiction_detector(run: RunState) -> StepOutcome:
    if run.fs_result is None:
        return StepOutcome.skipped("No filesystem reality check to compare against")
    claims = detect_claim_contradictions(load_claim_log(run.state), run.fs_result)
    regression = compare_fs_results(run.previous_fs, run.fs_result)
    verdict = {
        "has_contradiction": bool(claims["has_contradiction"] or regression["has_contradiction"]),
        "claim_contradictions": claims["contradictions"],
        "regression_details": regression["details"],
    }
    run.pack.contradiction = verdict
    if verdict["has_contradiction"]:
        reasons = claims["contradictions"] + regression["details"]
        return StepOutcome.failed("; ".join(reasons), verdict)
    return StepOutcome.passed(verdict)


async def route_nav_audit(run: RunState) -> StepOutcome:
    result = run_route_nav_audit(run.role, tools=TOOLS, guards=ROUTE_GUARDS)
    run.pack.route_nav_audit = result.to_dict()
    run.pack.tool_registry_snapshot = list(result.snapshots["tool_registry"])
    run.pack.route_guard_snapshot = list(result.snapshots["route_guards"])
    run.pack.nav_routes_visible = list(result.snapshots["nav_routes"])
    run.counts.increment_all(result.issue_codes())
    if result.critical > 0:
        return StepOutcome.failed(f"{result.critical} critical routing issue(s)", result.summary)
    return StepOutcome.passed(result.summary)


async def db_doctor(run: RunState) -> StepOutcome:
    """Transport failures SKIP; only a reported problem FAILs."""
    if run.rpc is None:
        run.pack.db_doctor = {"ok": None, "skipped": True, "error": "No RPC client configured"}
        return StepOutcome.skipped("No RPC client configured")
    try:
        data = _remote_json(await run.rpc.rpc(DEPENDENCY_CHECK_RPC))
    except BackendError as e:
        logger.warning("db doctor unavailable: %s", e.message)
        run.pack.db_doctor = {"ok": None, "skipped": True, "error": e.message}
        return StepOutcome.skipped(e.message)

    report = data if isinstance(data, dict) else {"ok": False, "error": "unexpected RPC result", "raw": data}
    run.pack.db_doctor = report
    suspects: List[Dict[str, Any]] = [s for s in report.get("suspects") or [] if isinstance(s, dict)]
    for s in suspects:
        if s.get("fix_sql"):
            run.pack.add_human_action("Run Fix SQL", f"db_doctor: {s.get('object', '?')}", value=str(s["fix_sql"]))
    if report.get("ok") is True:
        return StepOutcome.passed(report)
    count = report.get("suspect_count", len(suspects))
    return StepOutcome.failed(f"Dependency check reported {count} suspect(s)", report)


async def edge_preflight(run: RunState) -> StepOutcome:
    if run.functions is None:
        run.pack.edge_preflight = {"ok": None, "skipped": True, "error": "No functions client configured"}
        return StepOutcome.skipped("No functions client configured")
    name = run.config.preflight_function
    try:
        resp = await run.functions.invoke(name, {"mode": "preflight"})
    except BackendError as e:
        run.pack.edge_preflight = {"ok": False, "function": name, "error": e.message}
        return StepOutcome.failed(f"Preflight unreachable: {e.message}")

    data = _remote_json(resp.data) if isinstance(resp.data, dict) else {}
    report = data.get("report") if isinstance(data.get("report"), dict) else data
    run.pack.edge_preflight = {"function": name, "status": resp.status, "report": report}
    if resp.ok and report.get("ok") is True:
        return StepOutcome.passed(run.pack.edge_preflight)
    return StepOutcome.failed(f"Preflight not ok (HTTP {resp.status})", run.pack.edge_preflight)


async def qa(run: RunState) -> StepOutcome:
    ctx = run.role
    pack = run.pack
    pack.mini_qa = run_mini_qa(
        is_authenticated=ctx.is_authenticated,
        tool_registry_length=len(TOOLS),
        audit_runnable=pack.route_nav_audit is not None,
        tenant_count=len(pack.tenant_ids),
        is_admin=ctx.is_admin,
    )

    if not ctx.is_authenticated:
        pack.qa_access_status = QA_DENIED
        pack.add_human_action("Authenticate to run QA checks", "/auth")
        return StepOutcome.failed("QA access denied: not authenticated", pack.mini_qa)

    if not ctx.is_admin:
        pack.qa_access_status = QA_NOT_RUN
        pack.add_human_action("Ask an admin to run the QA tenant-isolation tests", "/platform/qa-tests")
        return StepOutcome.skipped("QA isolation tests require an admin", pack.mini_qa)

    pack.qa_access_status = QA_AVAILABLE
    if run.qa_harness is None:
        if pack.mini_qa.errors:
            return StepOutcome.failed("; ".join(pack.mini_qa.errors), pack.mini_qa)
        return StepOutcome.passed(pack.mini_qa, reason="mini QA only")

    report = await run.qa_harness.run()
    pack.qa_debug_json = _remote_json(report.to_dict())
    if not report.ok:
        s = report.summary
        return StepOutcome.failed(f"QA: {s['failed']} failed, {s['errors']} error(s)", report.summary)
    return StepOutcome.passed(report.summary)


async def edge_console_capture(run: RunState) -> StepOutcome:
    latest = _remote_json(get_latest_edge_run(run.state))
    run.pack.latest_edge_console_run = latest
    if latest is None:
        return StepOutcome.skipped("No edge console runs recorded")
    return StepOutcome.passed({"function_name": latest.get("function_name"), "timestamp": latest.get("timestamp")})


STEP_ORDER = (
    ("access_snapshot", access_snapshot),
    ("fs_reality_check", fs_reality_check),
    ("build_verification", build_verification),
    ("contradiction_detector", contradiction_detector),
    ("route_nav_audit", route_nav_audit),
    ("db_doctor", db_doctor),
    ("edge_preflight", edge_preflight),
    ("qa", qa),
    ("edge_console_capture", edge_console_capture),
)
