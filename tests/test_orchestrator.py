import json
import sqlite3

import pytest

from conftest import ADMIN_USER, CLIENT_USER
from proof_gate.auth import RoleContext
from proof_gate.backend import LocalRpcClient
from proof_gate.composer import verify_pack_token
from proof_gate.errors import PG_E_CONTRADICTION, ProofGateAborted
from proof_gate.evidence_pack import QA_AVAILABLE, QA_DENIED, QA_NOT_RUN, EdgeConsoleRun, save_edge_run
from proof_gate.fs_reality import (
    FSRealityCheckResult,
    ImportCheck,
    save_build_output,
    save_claim_log,
    store_fs_reality_check,
)
from proof_gate.ops_stats import OPS_STATS
from proof_gate.orchestrator import ProofGate
from proof_gate.qa import QAHarness
from proof_gate.recorder import StepOutcome
from proof_gate.registry import TOOLS, PlatformTool
from proof_gate.signing import FileEd25519Signer, LocalProofSigner, verify_proof_signature
from proof_gate.state import KEY_FS_CHECK, KEY_ISSUE_COUNTS, KEY_LAST_PACK, MemoryStateStore
from proof_gate.steps import STEP_ORDER, access_snapshot

ADMIN = RoleContext.from_roles(ADMIN_USER, ["admin"])
CLIENT = RoleContext.from_roles(CLIENT_USER, ["client"])


@pytest.fixture
def state():
    s = MemoryStateStore()
    save_build_output(s, "vite v5.0.0 building for production...\n✓ built in 3.1s")
    return s


@pytest.fixture
def tenants(store):
    return store.create_tenant("Acme Roofing"), store.create_tenant("Birch Dental")


def _gate(gate_config, store, gateway, state, *, harness=True, **kw) -> ProofGate:
    functions = gateway.functions_client()
    return ProofGate(
        gate_config,
        state,
        store=store,
        functions=functions,
        qa_harness=QAHarness(store, functions) if harness else None,
        **kw,
    )


@pytest.mark.asyncio
async def test_admin_run_passes(gate_config, store, gateway, state, tenants):
    gate = _gate(gate_config, store, gateway, state)
    run = await gate.run(ADMIN)

    assert run.ok, run.validation.errors
    assert [r.step_id for r in run.records] == [s for s, _ in STEP_ORDER]
    assert all(r.ok for r in run.records)

    pack = run.pack
    assert pack.qa_access_status == QA_AVAILABLE
    assert sorted(pack.tenant_ids) == sorted(tenants)
    assert pack.user_id_masked == ADMIN_USER[:8] + "..."
    assert pack.db_doctor["ok"] is True
    assert pack.edge_preflight["report"]["ok"] is True
    assert pack.qa_debug_json["summary"]["failed"] == 0
    assert pack.human_actions_required == []
    assert pack.validation_result is run.validation
    assert verify_pack_token(pack)
    assert run.composed.is_signed is False

    assert state.get(KEY_LAST_PACK)["proof_token"] == run.composed.proof_token
    assert state.get(KEY_FS_CHECK)["all_imports_ok"] is True
    assert OPS_STATS.snapshot()["proof_runs_by_verdict"] == {"pass": 1}


@pytest.mark.asyncio
async def test_signed_run(gate_config, store, gateway, state, tenants, signing_key):
    signer = LocalProofSigner(FileEd25519Signer(signing_key))
    run = await _gate(gate_config, store, gateway, state, signer=signer).run(ADMIN)

    assert run.composed.is_signed
    kernel = run.pack.proof_kernel
    assert kernel.signature.key_id == "test-signer"
    assert verify_proof_signature(signing_key, kernel.proof_token, kernel.pack_hash, kernel.signature)
    assert not verify_proof_signature(signing_key, kernel.proof_token, "0" * 64, kernel.signature)
    assert OPS_STATS.snapshot()["signatures_total"] == 1


@pytest.mark.asyncio
async def test_claim_contradiction_aborts_and_counts(gate_config, store, gateway, state, tenants):
    save_claim_log(state, "The validator module does not exist yet.")
    gate = _gate(gate_config, store, gateway, state)

    with pytest.raises(ProofGateAborted) as ei:
        await gate.run(ADMIN)

    err = ei.value
    assert err.code == PG_E_CONTRADICTION
    assert err.step_id == "contradiction_detector"
    assert [r.step_id for r in err.records] == [
        "access_snapshot", "fs_reality_check", "build_verification", "contradiction_detector",
    ]
    assert err.records[-1].ok is False
    assert err.pack.contradiction["has_contradiction"] is True
    assert err.pack.recurring_issue_counts == {"proof_contradiction": 1}
    assert state.get(KEY_ISSUE_COUNTS) == {"proof_contradiction": 1}
    assert state.get(KEY_LAST_PACK) is None
    assert OPS_STATS.snapshot()["proof_runs_by_verdict"] == {"aborted": 1}

    with pytest.raises(ProofGateAborted):
        await gate.run(ADMIN)
    assert state.get(KEY_ISSUE_COUNTS) == {"proof_contradiction": 2}


@pytest.mark.asyncio
async def test_import_status_change_since_last_run_aborts(gate_config, store, gateway, state, tenants):
    previous = FSRealityCheckResult(
        timestamp="2026-10-17T00:00:00.000Z",
        critical_paths=[],
        missing_paths=[],
        import_checks=[ImportCheck("validator", "proof_gate.validator", False, "ImportError: boom")],
        env={},
        build_output_present=True,
        build_output_text_preview="",
        all_imports_ok=False,
        failed_imports=["validator"],
    )
    store_fs_reality_check(state, previous)

    with pytest.raises(ProofGateAborted) as ei:
        await _gate(gate_config, store, gateway, state).run(ADMIN)
    details = ei.value.pack.contradiction["regression_details"]
    assert details == ['Import "validator" changed: was FAILED, now OK']


@pytest.mark.asyncio
async def test_unauthenticated_run_fails_without_abort(gate_config, store, gateway, state, tenants):
    run = await _gate(gate_config, store, gateway, state).run(RoleContext())

    assert not run.ok
    by_id = {r.step_id: r for r in run.records}
    assert by_id["access_snapshot"].ok is False
    assert by_id["qa"].ok is False
    assert run.pack.qa_access_status == QA_DENIED
    assert run.pack.user_id_masked == "(unauthenticated)"
    assert any(a.location == "/auth" for a in run.pack.human_actions_required)
    assert any("'denied'" in e for e in run.validation.errors)
    assert "User is not authenticated - some checks may be incomplete" in run.validation.warnings
    assert OPS_STATS.snapshot()["proof_runs_by_verdict"] == {"fail": 1}


@pytest.mark.asyncio
async def test_non_admin_skips_qa_and_records_blocker(gate_config, store, gateway, state, tenants):
    run = await _gate(gate_config, store, gateway, state).run(CLIENT)

    qa_record = next(r for r in run.records if r.step_id == "qa")
    assert qa_record.ok is True
    assert qa_record.result["status"] == "skip"
    assert run.pack.qa_access_status == QA_NOT_RUN
    assert run.pack.qa_debug_json is None
    assert [a.location for a in run.pack.human_actions_required] == ["/platform/qa-tests"]
    assert not run.ok
    assert not any("no recorded blocker" in e for e in run.validation.errors)
    assert any("unresolved human_actions_required" in e for e in run.validation.errors)


@pytest.mark.asyncio
async def test_admin_without_harness_runs_mini_qa(gate_config, store, gateway, state, tenants):
    run = await _gate(gate_config, store, gateway, state, harness=False).run(ADMIN)
    qa_record = next(r for r in run.records if r.step_id == "qa")
    assert qa_record.ok is True
    assert qa_record.result["reason"] == "mini QA only"
    assert run.pack.qa_access_status == QA_AVAILABLE
    assert run.pack.mini_qa.errors == []
    assert run.ok


@pytest.mark.asyncio
async def test_missing_build_output_fails_step(gate_config, store, gateway, tenants):
    run = await _gate(gate_config, store, gateway, MemoryStateStore()).run(ADMIN)
    build = next(r for r in run.records if r.step_id == "build_verification")
    assert build.ok is False
    assert build.error == "No build output saved"
    assert any("build_output.present is false" in e for e in run.validation.errors)


@pytest.mark.asyncio
async def test_step_exception_is_converted_to_fail_and_run_continues(gate_config, store, state):
    async def exploding(run):
        raise RuntimeError("disk on fire")

    async def after(run):
        return StepOutcome.passed({"reached": True})

    gate = ProofGate(
        gate_config,
        state,
        store=store,
        steps=[("access_snapshot", access_snapshot), ("exploding", exploding), ("after", after)],
    )
    run = await gate.run(ADMIN)

    assert [r.step_id for r in run.records] == ["access_snapshot", "exploding", "after"]
    boom = run.records[1]
    assert boom.ok is False
    assert boom.error == "disk on fire"
    assert "RuntimeError" in boom.error_stack
    assert run.records[2].ok is True
    assert any("1 step(s) failed" in e for e in run.validation.errors)


@pytest.mark.asyncio
async def test_custom_aborting_step(gate_config, store, state):
    async def gatekeeper(run):
        return StepOutcome.failed("closed")

    gate = ProofGate(
        gate_config,
        state,
        store=store,
        steps=[("gatekeeper", gatekeeper)],
        aborting_steps=frozenset({"gatekeeper"}),
    )
    with pytest.raises(ProofGateAborted) as ei:
        await gate.run(ADMIN)
    assert ei.value.step_id == "gatekeeper"
    assert state.get(KEY_ISSUE_COUNTS) == {"gatekeeper_abort": 1}


@pytest.mark.asyncio
async def test_db_doctor_suspects_become_fix_sql_actions(gate_config, store, gateway, state, tenants):
    report = {
        "ok": False,
        "suspect_count": 1,
        "suspects": [{
            "object": "leads.tenant_id",
            "type": "unindexed_foreign_key",
            "fix_sql": 'CREATE INDEX IF NOT EXISTS "idx_leads_tenant_id" ON "leads" ("tenant_id");',
        }],
    }
    rpc = LocalRpcClient({"qa_dependency_check": lambda: report})
    run = await _gate(gate_config, store, gateway, state, rpc=rpc).run(ADMIN)

    doctor = next(r for r in run.records if r.step_id == "db_doctor")
    assert doctor.ok is False
    assert doctor.error == "Dependency check reported 1 suspect(s)"
    (action,) = [a for a in run.pack.human_actions_required if a.action == "Run Fix SQL"]
    assert action.location == "db_doctor: leads.tenant_id"
    assert action.value.startswith("CREATE INDEX")


@pytest.mark.asyncio
async def test_db_doctor_transport_failure_skips(gate_config, store, gateway, state, tenants):
    run = await _gate(gate_config, store, gateway, state, rpc=LocalRpcClient({})).run(ADMIN)
    doctor = next(r for r in run.records if r.step_id == "db_doctor")
    assert doctor.ok is True
    assert doctor.result["status"] == "skip"
    assert run.pack.db_doctor["skipped"] is True
    assert run.ok


@pytest.mark.asyncio
async def test_db_doctor_sqlite_error_skips(gate_config, store, gateway, state, tenants):
    def locked():
        raise sqlite3.OperationalError("database is locked")

    run = await _gate(gate_config, store, gateway, state, rpc=LocalRpcClient({"qa_dependency_check": locked})).run(ADMIN)
    doctor = next(r for r in run.records if r.step_id == "db_doctor")
    assert doctor.result["status"] == "skip"
    assert "database is locked" in run.pack.db_doctor["error"]


@pytest.mark.asyncio
async def test_non_finite_remote_numbers_still_get_a_token(gate_config, store, gateway, state, tenants):
    report = json.loads('{"ok": true, "suspect_count": 0, "suspects": [], "latency_ms": NaN, "p99": Infinity}')
    rpc = LocalRpcClient({"qa_dependency_check": lambda: report})
    run = await _gate(gate_config, store, gateway, state, rpc=rpc).run(ADMIN)

    assert run.pack.db_doctor["latency_ms"] == "nan"
    assert run.pack.db_doctor["p99"] == "inf"
    assert run.pack.proof_token
    assert verify_pack_token(run.pack)
    assert run.ok


@pytest.mark.asyncio
async def test_route_findings_feed_recurring_counts(gate_config, store, gateway, state, tenants, monkeypatch):
    ghost = PlatformTool("ghost", "Ghost", "/platform/ghost", "authenticated", "debug")
    monkeypatch.setattr("proof_gate.steps.TOOLS", tuple(TOOLS) + (ghost,))
    gate = _gate(gate_config, store, gateway, state)

    first = await gate.run(ADMIN)
    assert first.pack.route_nav_audit["summary"]["critical"] == 1
    assert first.pack.recurring_issue_counts == {"missing_route": 1}

    second = await gate.run(ADMIN)
    assert second.pack.recurring_issue_counts == {"missing_route": 2}
    assert any("Recurring issues detected: missing_route(2x)" in w for w in second.validation.warnings)


@pytest.mark.asyncio
async def test_latest_edge_console_run_is_captured(gate_config, store, gateway, state, tenants):
    save_edge_run(state, EdgeConsoleRun(
        timestamp="2026-10-18T10:00:00.000Z",
        function_name="lead-webhook",
        request={"method": "POST"},
        response={"status": 200},
        duration_ms=12,
    ))
    run = await _gate(gate_config, store, gateway, state).run(ADMIN)
    assert run.pack.latest_edge_console_run["function_name"] == "lead-webhook"
    capture = next(r for r in run.records if r.step_id == "edge_console_capture")
    assert capture.result["status"] == "pass"
