import asyncio
import sqlite3

import pytest

from conftest import ADMIN_USER
from proof_gate.auth import RoleContext
from proof_gate.backend import LocalRpcClient
from proof_gate.evidence_pack import get_latest_edge_run
from proof_gate.state import MemoryStateStore
from proof_gate.support_bundle import PreflightReport, SupportBundleRunner

ADMIN = RoleContext.from_roles(ADMIN_USER, ["admin"])


def _runner(gateway, state, **overrides):
    kwargs = {
        "store": gateway.store,
        "rpc": LocalRpcClient.for_store(gateway.store),
        "functions": gateway.functions_client(),
    }
    kwargs.update(overrides)
    return SupportBundleRunner(gateway.config, state, **kwargs)


@pytest.mark.asyncio
async def test_bundle_runs_normalize_against_first_tenant(gateway, store):
    tenant = store.create_tenant("Acme")
    state = MemoryStateStore()

    bundle, records = await _runner(gateway, state).run(ADMIN, "/platform/settings")

    assert [r.step_id for r in records] == ["db_doctor", "edge_preflight", "normalize_test", "route_audit", "audit_logs"]
    assert all(r.ok for r in records), [r.to_dict() for r in records]
    assert bundle.current_route == "/platform/settings"
    assert bundle.user_id_masked != ADMIN_USER
    assert bundle.role_flags["isAdmin"] is True
    assert bundle.tenant_ids == [tenant]
    assert bundle.db_doctor.ok and bundle.edge_preflight.ok
    assert bundle.normalize_test["status"] == 200
    assert bundle.human_actions_required == []

    run = get_latest_edge_run(state)
    assert run["function_name"] == "lead-webhook"
    assert run["response"]["status"] == 200
    assert store.count_leads(tenant) == 1


@pytest.mark.asyncio
async def test_normalize_skipped_without_tenants(gateway):
    state = MemoryStateStore()
    bundle, records = await _runner(gateway, state).run(ADMIN)
    assert bundle.normalize_test == {"skipped": True, "reason": "Dependencies not OK or no tenants"}
    assert records[2].result["status"] == "skip"
    assert get_latest_edge_run(state) is None


@pytest.mark.asyncio
async def test_without_backends_every_step_degrades(gateway):
    bundle, records = await _runner(gateway, MemoryStateStore(), rpc=None, functions=None, store=None).run(ADMIN)
    statuses = {r.step_id: r.result["status"] for r in records}
    assert statuses == {
        "db_doctor": "skip",
        "edge_preflight": "skip",
        "normalize_test": "skip",
        "route_audit": "pass",
        "audit_logs": "skip",
    }
    assert bundle.tenant_ids == []


@pytest.mark.asyncio
async def test_suspects_become_fix_sql_action(gateway, store):
    store.create_tenant("Acme")
    conn = sqlite3.connect(store.db_path)
    conn.execute("CREATE TABLE call_notes (id TEXT PRIMARY KEY, lead_id TEXT REFERENCES leads(id))")
    conn.commit()
    conn.close()

    bundle, records = await _runner(gateway, MemoryStateStore()).run(ADMIN)
    assert records[0].ok is False
    assert bundle.normalize_test["skipped"] is True
    (action,) = bundle.human_actions_required
    assert action.action == "Run Fix SQL"
    assert "call_notes" in action.value


@pytest.mark.asyncio
async def test_unknown_procedure_fails_db_doctor(gateway):
    bundle, records = await _runner(gateway, MemoryStateStore(), rpc=LocalRpcClient({})).run(ADMIN)
    assert records[0].ok is False
    assert bundle.db_doctor.error == "unknown procedure qa_dependency_check"


def test_bundle_serializes(gateway):
    bundle, _ = asyncio.run(_runner(gateway, MemoryStateStore()).run(ADMIN))
    body = bundle.to_dict()
    assert body["db_doctor"]["ok"] is True
    assert isinstance(body["route_audit"], dict)


class TestPreflightReport:
    def test_from_data(self):
        report = PreflightReport.from_data({"ok": True, "suspects": [{"object": "x"}, "junk"]})
        assert report.ok is True
        assert report.suspects == [{"object": "x"}]
        assert report.suspect_count == 1

    def test_ok_must_be_true(self):
        assert PreflightReport.from_data({"ok": "yes"}).ok is False

    def test_unexpected_shape(self):
        assert PreflightReport.from_data(["x"]).error == "unexpected report shape"
