"""Generic lead webhook.

Tenant resolution, in order:

1. ``X-Tenant-Id`` naming an existing tenant (an unknown id is rejected, it
   does not fall through).
2. ``X-Api-Key``, SHA-256 hashed and matched against active ``generic``
   integrations.

The raw webhook is stored first under a per-tenant dedupe key. A unique
violation on that key means the same lead arrived in the same minute, and the
caller gets ``{"status": "duplicate"}`` with HTTP 200.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .crypto import _iso_utc, _now_utc
from .errors import (
    DuplicateKeyError,
    PG_E_INTERNAL,
    PG_E_PAYLOAD_EMPTY,
    PG_E_TENANT_INVALID,
    PG_E_TENANT_REQUIRED,
    ProofGateError,
    proof_error,
)
from .store import PlatformStore, hash_api_key

logger = logging.getLogger("proof_gate.webhook")

SOURCE_GENERIC = "generic"
REDACTED_HEADER_MARKERS = ("authorization", "api-key", "apikey", "cookie")


@dataclass
class NormalizedLead:
    name: str
    email: Optional[str]
    phone: Optional[str]
    source: str


def _first(payload: Mapping[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = payload.get(k)
        if v not in (None, ""):
            return str(v)
    return None


def normalize_lead(payload: Mapping[str, Any]) -> NormalizedLead:
    name = _first(payload, "name", "Name", "full_name", "fullName")
    if not name:
        first = _first(payload, "first_name", "firstName") or ""
        last = _first(payload, "last_name", "lastName") or ""
        name = f"{first} {last}".strip() or "Unknown"
    return NormalizedLead(
        name=name,
        email=_first(payload, "email", "Email"),
        phone=_first(payload, "phone", "Phone", "phone_number", "phoneNumber"),
        source=_first(payload, "source", "utm_source") or "webhook",
    )


def compute_dedupe_key(payload: Mapping[str, Any], now: datetime) -> str:
    """SHA-256 of ``email|phone|YYYY-MM-DDTHH:MM`` (UTC, minute precision)."""
    email = _first(payload, "email", "Email") or ""
    phone = _first(payload, "phone", "Phone") or ""
    minute = now.strftime("%Y-%m-%dT%H:%M")
    return hashlib.sha256(f"{email}|{phone}|{minute}".encode("utf-8")).hexdigest()


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in headers.items():
        lk = k.lower()
        if any(marker in lk for marker in REDACTED_HEADER_MARKERS):
            continue
        out[lk] = v
    return out


class LeadWebhookService:
    def __init__(self, store: PlatformStore, clock: Callable[[], datetime] = _now_utc):
        self.store = store
        self.clock = clock

    def resolve_tenant(self, headers: Mapping[str, str]) -> str:
        lowered = {k.lower(): v for k, v in headers.items()}
        tenant_id = (lowered.get("x-tenant-id") or "").strip()
        if tenant_id:
            if not self.store.tenant_exists(tenant_id):
                logger.warning("lead-webhook: invalid tenant id %s", tenant_id)
                raise proof_error(PG_E_TENANT_INVALID, "Invalid tenant ID", http_status=400)
            return tenant_id

        api_key = (lowered.get("x-api-key") or "").strip()
        if api_key:
            found = self.store.find_tenant_by_api_key_hash(hash_api_key(api_key), provider=SOURCE_GENERIC)
            if found:
                return found

        logger.warning("lead-webhook: could not resolve tenant")
        raise proof_error(
            PG_E_TENANT_REQUIRED,
            "Tenant identification required. Provide X-Tenant-Id or X-Api-Key header.",
            http_status=400,
        )

    def handle(self, headers: Mapping[str, str], payload: Any) -> Dict[str, Any]:
        """Process one webhook delivery and return the response body.

        Raises ProofGateError for every non-200 outcome.
        """
        start = time.monotonic()
        if not isinstance(payload, dict) or not payload:
            raise proof_error(PG_E_PAYLOAD_EMPTY, "Empty or invalid payload", http_status=400)

        tenant_id = self.resolve_tenant(headers)
        now = self.clock()
        dedupe_key = compute_dedupe_key(payload, now)

        try:
            webhook_id = self.store.insert_inbound_webhook(
                tenant_id, SOURCE_GENERIC, redact_headers(headers), payload, dedupe_key
            )
        except DuplicateKeyError:
            logger.info("lead-webhook: duplicate delivery dedupe_key=%s", dedupe_key)
            return {
                "status": "duplicate",
                "message": "This lead has already been processed",
                "dedupe_key": dedupe_key,
            }

        lead = normalize_lead(payload)
        do_not_call = self.store.is_suppressed(tenant_id, phone=lead.phone, email=lead.email)

        try:
            lead_id = self.store.insert_lead(
                tenant_id,
                name=lead.name,
                email=lead.email,
                phone=lead.phone,
                source=lead.source,
                do_not_call=do_not_call,
                inbound_webhook_id=webhook_id,
                metadata={"raw_payload": payload, "received_at": _iso_utc(now)},
            )
        except ProofGateError as e:
            logger.error("lead-webhook: failed to create lead: %s", e.message)
            self.store.update_webhook_status(webhook_id, "error", e.message)
            raise proof_error(PG_E_INTERNAL, "Failed to create lead", http_status=500, details=e.message) from e

        self.store.update_webhook_status(webhook_id, "processed")
        self.store.log_activity(
            tenant_id,
            "lead_created",
            "lead",
            lead_id,
            f"New lead from webhook: {lead.name}",
            {"source": lead.source, "do_not_call": do_not_call},
        )

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("lead-webhook: lead created tenant=%s lead=%s duration_ms=%d", tenant_id, lead_id, duration_ms)
        return {
            "success": True,
            "lead_id": lead_id,
            "webhook_id": webhook_id,
            "do_not_call": do_not_call,
            "duration_ms": duration_ms,
        }
