import asyncio
import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from conftest import CLIENT_TOKEN
from proof_gate.backend import HttpBackendClient
from proof_gate.qa import ERROR, FAIL, PASS, SKIP, QAHarness
from proof_gate.store import PlatformStore


class LeakyStore(PlatformStore):
    """Forgets the tenant filter on reads."""

    def select_alerts_for_tenant(self, tenant_id, *, include_global=True, limit=200):
        with self._db() as conn:
            rows = conn.execute("SELECT id, tenant_id, alert_type, title, acknowledged_at FROM ceo_alerts").fetchall()
        return [dict(r) for r in rows]


class CarelessUpdateStore(PlatformStore):
    """Acknowledges whatever id it is given."""

    def acknowledge_alerts(self, acting_tenant_id, alert_ids):
        ids = list(alert_ids)
        with self._db() as conn:
            cur = conn.execute(
                f"UPDATE ceo_alerts SET acknowledged_at = 'now' WHERE id IN ({','.join('?' for _ in ids)})", ids
            )
            return cur.rowcount


class BrokenStore(PlatformStore):
    def select_alerts_for_tenant(self, tenant_id, *, include_global=True, limit=200):
        raise RuntimeError("connection reset")


def _seed(store):
    a = store.create_tenant("Acme", tenant_id="tenant-a")
    b = store.create_tenant("Birch", tenant_id="tenant-b")
    store.insert_alert(a, "cost", "A spend")
    store.insert_alert(b, "cost", "B spend")
    store.insert_alert(None, "system", "Global notice")
    return a, b


def _nonces():
    n = iter(range(1000))
    return lambda: f"qa_test_{next(n)}"


@pytest.mark.asyncio
async def test_full_battery_passes(gateway, store):
    a, b = _seed(store)
    harness = QAHarness(
        store,
        gateway.functions_client(),
        client_authorization=f"Bearer {CLIENT_TOKEN}",
        nonce_factory=_nonces(),
    )
    report = await harness.run()

    assert report.tenant_ids == [a, b]
    assert [t.status for t in report.tests] == [PASS] * 7, [t.to_dict() for t in report.tests]
    assert report.ok
    assert report.summary == {"passed": 7, "failed": 0, "skipped": 0, "errors": 0}

    read_a = report.get("TEST 1")
    assert read_a.details["tenant_rows"] == 1
    assert read_a.details["global_rows"] == 1
    assert read_a.details["foreign_rows"] == 0

    gating = report.get("TEST 7")
    assert gating.details == {"no_auth_status": 401, "non_admin_status": 403}

    insertion = report.get("TEST 5")
    assert insertion.details["qa_nonce"] == "qa_test_0"
    assert store.find_leads_by_nonce(a, "qa_test_0")


@pytest.mark.asyncio
async def test_read_leak_fails(tmp_path):
    store = LeakyStore(str(tmp_path / "leaky.db"))
    a, b = _seed(store)
    report = await QAHarness(store).run()

    read_a = report.get("TEST 1")
    assert read_a.status == FAIL
    assert read_a.details["foreign_tenant_ids"] == [b]
    assert read_a.error == "Found 1 row(s) from other tenants"
    assert report.get("TEST 4").status == FAIL
    assert not report.ok


@pytest.mark.asyncio
async def test_cross_tenant_update_fails(tmp_path):
    store = CarelessUpdateStore(str(tmp_path / "careless.db"))
    _seed(store)
    result = (await QAHarness(store).run()).get("TEST 3")
    assert result.status == FAIL
    assert result.error.startswith("ISOLATION BREACH")
    assert result.details["rows_updated"] == 1


@pytest.mark.asyncio
async def test_update_probe_skips_without_target_rows(store):
    a = store.create_tenant("A")
    b = store.create_tenant("B")
    result = await QAHarness(store).update_isolation(a, b)
    assert result.status == SKIP


@pytest.mark.asyncio
async def test_single_tenant_skips_isolation_tests(store):
    store.create_tenant("Only")
    report = await QAHarness(store).run()
    assert [t.status for t in report.tests[:4]] == [SKIP] * 4
    assert report.tests[0].details["reason"] == "Need at least two tenants for isolation tests"


@pytest.mark.asyncio
async def test_without_functions_client_function_tests_skip(store):
    _seed(store)
    report = await QAHarness(store).run()
    assert [t.status for t in report.tests[4:]] == [SKIP] * 3
    assert report.ok


@pytest.mark.asyncio
async def test_exception_becomes_error_and_battery_continues(tmp_path):
    store = BrokenStore(str(tmp_path / "broken.db"))
    _seed(store)
    report = await QAHarness(store).run()

    first = report.get("TEST 1")
    assert first.status == ERROR
    assert first.error == "RuntimeError: connection reset"
    assert len(report.tests) == 7
    assert report.summary["errors"] == 4
    assert not report.ok


@pytest.mark.asyncio
async def test_gating_without_client_session(gateway):
    result = await QAHarness(gateway.store, gateway.functions_client()).scheduler_gating()
    assert result.status == PASS
    assert result.details["non_admin_status"] is None


@pytest.mark.asyncio
async def test_gating_fails_when_non_admin_is_let_through(gateway, store):
    store.set_user_role("client-user-0002", "admin")
    harness = QAHarness(store, gateway.functions_client(), client_authorization=f"Bearer {CLIENT_TOKEN}")
    result = await harness.scheduler_gating()
    assert result.status == FAIL
    assert "expected 403" in result.error


def test_report_serializes(store):
    report = asyncio.run(QAHarness(store).run())
    body = report.to_dict()
    assert body["tenant_ids"] == []
    assert len(body["tests"]) == 7
    assert body["summary"]["skipped"] == 7


class _FunctionsGatewayHandler(BaseHTTPRequestHandler):
    """Scheduler function that answers by bearer token only."""

    seen = []

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        self.rfile.read(length)
        auth = self.headers.get("Authorization")
        _FunctionsGatewayHandler.seen.append((self.path, auth, self.headers.get("apikey")))

        if auth is None:
            status, body = 401, {"error": "Missing authorization header"}
        elif auth == "Bearer admin-session":
            status, body = 200, {"success": True}
        else:
            status, body = 403, {"error": "Admin access required"}
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body).encode("utf-8"))

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def functions_server():
    _FunctionsGatewayHandler.seen = []
    httpd = HTTPServer(("127.0.0.1", 0), _FunctionsGatewayHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


@pytest.mark.asyncio
async def test_gating_over_http_sends_no_credentials_on_anonymous_call(store, functions_server):
    client = HttpBackendClient(base_url=functions_server, api_key="anon-key", access_token="admin-session")
    harness = QAHarness(store, client, client_authorization="Bearer client-session")

    result = await harness.scheduler_gating()

    assert result.status == PASS, result.error
    assert result.details == {"no_auth_status": 401, "non_admin_status": 403}
    assert _FunctionsGatewayHandler.seen == [
        ("/functions/v1/admin-run-scheduler", None, "anon-key"),
        ("/functions/v1/admin-run-scheduler", "Bearer client-session", "anon-key"),
    ]


@pytest.mark.asyncio
async def test_operator_token_is_sent_by_default(functions_server):
    client = HttpBackendClient(base_url=functions_server, access_token="admin-session")
    resp = await client.invoke("admin-run-scheduler", {"action": "check_job_status"})
    assert resp.status == 200
    assert _FunctionsGatewayHandler.seen[-1][1] == "Bearer admin-session"
