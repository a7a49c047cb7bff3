import asyncio

import pytest

from proof_gate.auth import RoleContext
from proof_gate.composer import compose_evidence_pack, compute_pack_hash, verify_pack_token
from proof_gate.crypto import _iso_utc
from proof_gate.errors import PG_E_PACK_FINALIZED, ProofGateError
from proof_gate.evidence_pack import QA_AVAILABLE, QA_DENIED, QA_NOT_RUN, BuildOutput, EvidencePack, run_mini_qa
from proof_gate.recorder import StepRecord
from proof_gate.registry import TOOLS
from proof_gate.route_audit import run_route_nav_audit
from proof_gate.validator import (
    get_validation_summary,
    schema_errors,
    validate_evidence_pack,
    would_pass_validation,
)

ADMIN = RoleContext.from_roles("user-1234567890", ["admin"])


def _record(step_id: str, ok: bool = True, error=None) -> StepRecord:
    now = _iso_utc()
    return StepRecord(step_id=step_id, started_at=now, ended_at=now, duration_ms=1, ok=ok, error=error)


def _passing_pack(records=None) -> EvidencePack:
    pack = EvidencePack.create(ADMIN, "/platform/proof-gate", tenant_ids=["t-1", "t-2"])
    pack.fs_reality_check = {"all_imports_ok": True, "failed_imports": []}
    pack.build_output = BuildOutput(present=True, text="Build succeeded in 4.2s")
    audit = run_route_nav_audit(ADMIN)
    pack.route_nav_audit = audit.to_dict()
    pack.tool_registry_snapshot = list(audit.snapshots["tool_registry"])
    pack.route_guard_snapshot = list(audit.snapshots["route_guards"])
    pack.qa_access_status = QA_AVAILABLE
    pack.mini_qa = run_mini_qa(
        is_authenticated=True, tool_registry_length=len(TOOLS), audit_runnable=True, tenant_count=2, is_admin=True
    )
    asyncio.run(compose_evidence_pack(pack, records if records is not None else [_record("access_snapshot")]))
    return pack


def test_passing_pack_validates():
    pack = _passing_pack()
    result = validate_evidence_pack(pack)
    assert result.ok, result.errors
    assert result.errors == []
    assert result.proof_token == pack.proof_token
    assert "schema" in result.checks_performed
    assert would_pass_validation(pack)
    assert get_validation_summary(pack, result) == "PASS"


def test_pack_token_matches_content():
    pack = _passing_pack()
    assert verify_pack_token(pack)
    assert pack.proof_kernel.pack_hash == compute_pack_hash(pack)
    pack.current_route = "/somewhere/else"
    assert not verify_pack_token(pack)


def test_schema_is_clean_for_passing_pack():
    assert schema_errors(_passing_pack().to_dict()) == []


def test_schema_rejects_bad_qa_status():
    d = _passing_pack().to_dict()
    d["qa_access_status"] = "maybe"
    msgs = schema_errors(d)
    assert any("qa_access_status" in m for m in msgs)


class TestBlockingRules:
    def test_missing_fs_reality_check(self):
        pack = _passing_pack()
        pack.fs_reality_check = None
        result = validate_evidence_pack(pack)
        assert not result.ok
        assert any("fs_reality_check is missing" in e for e in result.errors)

    def test_failed_imports(self):
        pack = _passing_pack()
        pack.fs_reality_check = {"all_imports_ok": False, "failed_imports": ["validator"]}
        result = validate_evidence_pack(pack)
        assert any("failed imports: validator" in e for e in result.errors)
        assert any(a.value == "validator" for a in result.required_actions)

    def test_build_output_absent(self):
        pack = _passing_pack()
        pack.build_output = BuildOutput(present=False)
        result = validate_evidence_pack(pack)
        assert any("build_output.present is false" in e for e in result.errors)

    def test_build_output_blank(self):
        pack = _passing_pack()
        pack.build_output = BuildOutput(present=True, text="   \n")
        result = validate_evidence_pack(pack)
        assert any("build_output.text is empty" in e for e in result.errors)

    def test_route_audit_missing(self):
        pack = _passing_pack()
        pack.route_nav_audit = None
        result = validate_evidence_pack(pack)
        assert any("route_nav_audit is missing" in e for e in result.errors)

    def test_route_audit_critical(self):
        pack = _passing_pack()
        pack.route_nav_audit = {"summary": {"critical": 2, "warning": 0}, "findings": []}
        result = validate_evidence_pack(pack)
        assert any("2 critical issue(s)" in e for e in result.errors)

    def test_qa_denied(self):
        pack = _passing_pack()
        pack.qa_access_status = QA_DENIED
        result = validate_evidence_pack(pack)
        assert any("'denied'" in e for e in result.errors)

    def test_qa_not_run_without_blocker(self):
        pack = _passing_pack()
        pack.qa_access_status = QA_NOT_RUN
        result = validate_evidence_pack(pack)
        assert any("'not_run' with no recorded blocker" in e for e in result.errors)

    def test_qa_not_run_with_blocker_only_flags_unresolved_action(self):
        pack = _passing_pack()
        pack.qa_access_status = QA_NOT_RUN
        pack.add_human_action("Ask an admin to run the QA tenant-isolation tests", "/platform/qa-tests")
        result = validate_evidence_pack(pack)
        assert not any("not_run" in e for e in result.errors)
        assert any("1 unresolved human_actions_required" in e for e in result.errors)

    def test_completed_human_actions_do_not_block(self):
        pack = _passing_pack()
        pack.add_human_action("Run Fix SQL", "db_doctor", completed=True)
        assert validate_evidence_pack(pack).ok

    def test_no_runs(self):
        pack = _passing_pack(records=[])
        result = validate_evidence_pack(pack)
        assert any("No proof runs recorded" in e for e in result.errors)

    def test_failed_run(self):
        pack = _passing_pack(records=[_record("access_snapshot"), _record("db_doctor", ok=False, error="timeout")])
        result = validate_evidence_pack(pack)
        assert any("1 step(s) failed" in e for e in result.errors)
        assert any(a.action == "Fix failed step: db_doctor" and a.value == "timeout" for a in result.required_actions)

    def test_missing_proof_kernel(self):
        pack = _passing_pack()
        pack.proof_kernel = None
        result = validate_evidence_pack(pack)
        assert any("proof_kernel is missing" in e for e in result.errors)

    def test_contradiction(self):
        pack = _passing_pack()
        pack.contradiction = {"has_contradiction": True, "claim_contradictions": ["x"], "regression_details": []}
        result = validate_evidence_pack(pack)
        assert any("contradiction detected" in e for e in result.errors)

    def test_every_problem_is_reported_in_one_pass(self):
        pack = _passing_pack()
        pack.fs_reality_check = None
        pack.build_output = BuildOutput(present=False)
        pack.qa_access_status = QA_DENIED
        result = validate_evidence_pack(pack)
        assert len(result.errors) >= 3
        assert get_validation_summary(pack, result).startswith("FAIL (")


class TestAdvisoryRules:
    def test_missing_mini_qa_warns(self):
        pack = _passing_pack()
        pack.mini_qa = None
        result = validate_evidence_pack(pack)
        assert result.ok
        assert any("mini_qa is missing" in w for w in result.warnings)

    def test_empty_snapshots_warn(self):
        pack = _passing_pack()
        pack.tool_registry_snapshot = []
        pack.route_guard_snapshot = []
        result = validate_evidence_pack(pack)
        assert result.ok
        assert "tool_registry_snapshot is empty" in result.warnings
        assert "route_guard_snapshot is empty" in result.warnings
        assert get_validation_summary(pack, result) == "PASS (2 warning(s))"

    def test_recurring_issues_warn(self):
        pack = _passing_pack()
        pack.recurring_issue_counts = {"orphan_route": 3, "role_mismatch": 1}
        result = validate_evidence_pack(pack)
        assert result.ok
        assert any("orphan_route(3x)" in w and "role_mismatch" not in w for w in result.warnings)


def test_finalize_is_write_once():
    pack = _passing_pack()
    result = validate_evidence_pack(pack)
    pack.finalize(result)
    assert pack.is_finalized
    assert pack.proof_kernel.validator_result["ok"] is True
    with pytest.raises(ProofGateError) as ei:
        pack.finalize(result)
    assert ei.value.code == PG_E_PACK_FINALIZED


def test_finalized_pack_round_trips_through_json():
    pack = _passing_pack()
    pack.finalize(validate_evidence_pack(pack))
    again = EvidencePack.from_dict(pack.to_dict())
    assert again.to_dict() == pack.to_dict()
    assert verify_pack_token(again)
