from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from proof_gate.errors import PG_E_PAYLOAD_EMPTY, PG_E_TENANT_INVALID, PG_E_TENANT_REQUIRED, ProofGateError
from proof_gate.ops_stats import OPS_STATS
from proof_gate.server import create_app
from proof_gate.webhook import LeadWebhookService, compute_dedupe_key, normalize_lead, redact_headers

NOW = datetime(2026, 10, 18, 9, 30, 15, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def tenant(store):
    return store.create_tenant("Acme Roofing")


@pytest.fixture
def client(gateway):
    return TestClient(create_app(gateway))


def test_nonce_lead_is_created_and_findable(client, store, tenant):
    r = client.post(
        "/functions/v1/lead-webhook",
        json={"name": "Jane Doe", "email": "jane@example.com", "qa_nonce": "abc123"},
        headers={"X-Tenant-Id": tenant},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["do_not_call"] is False

    matches = store.find_leads_by_nonce(tenant, "abc123")
    assert [m["id"] for m in matches] == [body["lead_id"]]

    lead = store.get_lead(body["lead_id"])
    assert lead["name"] == "Jane Doe"
    assert lead["status"] == "new"
    assert lead["lead_temperature"] == "warm"
    assert lead["metadata"]["raw_payload"]["qa_nonce"] == "abc123"

    webhook = store.get_webhook(body["webhook_id"])
    assert webhook["status"] == "processed"
    assert store.list_activity(tenant)[0]["action_type"] == "lead_created"
    assert OPS_STATS.snapshot()["webhooks_by_outcome"] == {"created": 1}


def test_same_minute_delivery_is_duplicate(store, tenant):
    clock = _Clock(NOW)
    svc = LeadWebhookService(store, clock=clock)
    payload = {"name": "Jane", "email": "jane@example.com", "phone": "5551234567"}
    headers = {"X-Tenant-Id": tenant}

    first = svc.handle(headers, payload)
    clock.now = NOW + timedelta(seconds=30)
    second = svc.handle(headers, payload)

    assert first["success"] is True
    assert second["status"] == "duplicate"
    assert second["message"] == "This lead has already been processed"
    assert second["dedupe_key"] == compute_dedupe_key(payload, NOW)
    assert store.count_leads(tenant) == 1


def test_next_minute_delivery_is_a_new_lead(store, tenant):
    clock = _Clock(NOW)
    svc = LeadWebhookService(store, clock=clock)
    payload = {"name": "Jane", "email": "jane@example.com"}

    svc.handle({"X-Tenant-Id": tenant}, payload)
    clock.now = NOW + timedelta(minutes=1)
    svc.handle({"X-Tenant-Id": tenant}, payload)
    assert store.count_leads(tenant) == 2


def test_dedupe_is_per_tenant(store, tenant):
    other = store.create_tenant("Birch Dental")
    svc = LeadWebhookService(store, clock=_Clock(NOW))
    payload = {"email": "same@example.com"}
    assert svc.handle({"X-Tenant-Id": tenant}, payload)["success"]
    assert svc.handle({"X-Tenant-Id": other}, payload)["success"]


def test_suppressed_contact_is_flagged_do_not_call(store, tenant):
    store.add_suppression(tenant, phone="5550001111")
    svc = LeadWebhookService(store)
    body = svc.handle({"X-Tenant-Id": tenant}, {"name": "Opted Out", "phone": "5550001111"})
    assert body["do_not_call"] is True
    assert store.get_lead(body["lead_id"])["do_not_call"] is True


def test_suppression_is_tenant_scoped(store, tenant):
    other = store.create_tenant("Birch Dental")
    store.add_suppression(other, email="x@example.com")
    body = LeadWebhookService(store).handle({"X-Tenant-Id": tenant}, {"email": "x@example.com"})
    assert body["do_not_call"] is False


def test_api_key_resolves_tenant(client, store, tenant):
    store.add_integration(tenant, "sk_live_abc")
    r = client.post("/functions/v1/lead-webhook", json={"email": "k@example.com"}, headers={"X-Api-Key": "sk_live_abc"})
    assert r.status_code == 200
    assert store.get_lead(r.json()["lead_id"])["tenant_id"] == tenant


def test_inactive_integration_is_not_used(client, store, tenant):
    store.add_integration(tenant, "sk_old", is_active=False)
    r = client.post("/functions/v1/lead-webhook", json={"email": "k@example.com"}, headers={"X-Api-Key": "sk_old"})
    assert r.status_code == 400
    assert r.json()["code"] == PG_E_TENANT_REQUIRED


def test_unknown_tenant_id_is_rejected(client, store, tenant):
    store.add_integration(tenant, "sk_live_abc")
    r = client.post(
        "/functions/v1/lead-webhook",
        json={"email": "k@example.com"},
        headers={"X-Tenant-Id": "no-such-tenant", "X-Api-Key": "sk_live_abc"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid tenant ID", "code": PG_E_TENANT_INVALID}


def test_missing_tenant_identification(client):
    r = client.post("/functions/v1/lead-webhook", json={"email": "k@example.com"})
    assert r.status_code == 400
    assert r.json()["code"] == PG_E_TENANT_REQUIRED
    assert OPS_STATS.snapshot()["webhooks_by_outcome"] == {"rejected": 1}


@pytest.mark.parametrize("raw", [b"{}", b"[]", b"not json", b""])
def test_empty_or_invalid_payload(client, tenant, raw):
    r = client.post(
        "/functions/v1/lead-webhook",
        content=raw,
        headers={"X-Tenant-Id": tenant, "Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["code"] == PG_E_PAYLOAD_EMPTY


def test_secret_headers_are_not_stored(store, tenant):
    svc = LeadWebhookService(store)
    body = svc.handle(
        {"X-Tenant-Id": tenant, "Authorization": "Bearer s3cret", "X-Api-Key": "k", "User-Agent": "zapier"},
        {"email": "h@example.com"},
    )
    stored = store.get_webhook(body["webhook_id"])
    assert "s3cret" not in stored["headers_json"]
    assert "zapier" in stored["headers_json"]


def test_lead_insert_failure_is_reported_as_500(store, tenant, monkeypatch):
    svc = LeadWebhookService(store)

    def fail(*args, **kwargs):
        raise ProofGateError(code="PG_E_STORAGE", message="disk full")

    monkeypatch.setattr(store, "insert_lead", fail)
    with pytest.raises(ProofGateError) as ei:
        svc.handle({"X-Tenant-Id": tenant}, {"email": "e@example.com"})
    assert ei.value.http_status == 500
    assert ei.value.message == "Failed to create lead"


class TestNormalize:
    def test_name_variants(self):
        assert normalize_lead({"full_name": "A B"}).name == "A B"
        assert normalize_lead({"firstName": "Ann", "lastName": "Lee"}).name == "Ann Lee"
        assert normalize_lead({"first_name": "Ann"}).name == "Ann"
        assert normalize_lead({"email": "x@y.z"}).name == "Unknown"

    def test_contact_and_source(self):
        lead = normalize_lead({"Email": "E@x.io", "phone_number": "555", "utm_source": "ads"})
        assert (lead.email, lead.phone, lead.source) == ("E@x.io", "555", "ads")
        assert normalize_lead({"name": "n"}).source == "webhook"

    def test_empty_strings_are_ignored(self):
        assert normalize_lead({"name": "", "Name": "Real"}).name == "Real"


class TestDedupeKey:
    def test_minute_precision(self):
        payload = {"email": "a@b.c", "phone": "1"}
        same = compute_dedupe_key(payload, NOW.replace(second=59))
        assert compute_dedupe_key(payload, NOW) == same
        assert compute_dedupe_key(payload, NOW + timedelta(minutes=1)) != same

    def test_depends_on_contact(self):
        assert compute_dedupe_key({"email": "a@b.c"}, NOW) != compute_dedupe_key({"email": "z@b.c"}, NOW)


def test_redact_headers():
    out = redact_headers({"Authorization": "x", "X-Api-Key": "y", "apikey": "z", "Cookie": "c", "X-Tenant-Id": "t"})
    assert out == {"x-tenant-id": "t"}
