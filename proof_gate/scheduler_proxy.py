"""Admin scheduler proxy.

Lets an authenticated admin trigger scheduler actions without the internal
scheduler secret ever leaving the server. Every forwarded call is written to
the platform audit log, success or not.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Optional, Tuple

from .auth import ROLE_ADMIN, SessionAuth
from .errors import (
    BackendError,
    PG_E_AUTH_INVALID,
    PG_E_AUTH_REQUIRED,
    PG_E_BAD_REQUEST,
    PG_E_FORBIDDEN,
    PG_E_SCHEDULER_NOT_CONFIGURED,
    PG_E_SCHEDULER_UPSTREAM,
    proof_error,
)
from .store import PlatformStore

logger = logging.getLogger("proof_gate.scheduler")

ALLOWED_ACTIONS = ("run_daily_briefs", "run_cost_rollup", "run_outreach_queue", "check_job_status")
AUDIT_ACTION_TYPE = "admin_scheduler_trigger"


class SchedulerProxy:
    def __init__(
        self,
        store: PlatformStore,
        auth: SessionAuth,
        scheduler_url: str = "",
        secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self.store = store
        self.auth = auth
        self.scheduler_url = scheduler_url
        self.secret = secret
        self.timeout_seconds = timeout_seconds

    def authorize(self, authorization: Optional[str]) -> str:
        """Return the admin's user id or raise 401/403."""
        if not (authorization or "").strip():
            raise proof_error(PG_E_AUTH_REQUIRED, "Missing authorization header", http_status=401)
        user_id, err = self.auth.resolve_identity(authorization)
        if err or not user_id:
            logger.warning("admin-run-scheduler: auth failed: %s", err)
            raise proof_error(PG_E_AUTH_INVALID, "Authentication failed", http_status=401)
        if not self.store.has_role(user_id, ROLE_ADMIN):
            logger.warning("admin-run-scheduler: non-admin access attempt user=%s", user_id)
            raise proof_error(PG_E_FORBIDDEN, "Admin access required", http_status=403)
        return user_id

    def _forward(self, body: Dict[str, Any]) -> Tuple[int, Any]:
        req = urllib.request.Request(
            self.scheduler_url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json", "X-Internal-Secret": self.secret or ""},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                status, raw = int(resp.status), resp.read()
        except urllib.error.HTTPError as e:
            status, raw = int(e.code), e.read() or b""
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise BackendError(f"scheduler unreachable: {type(e).__name__}: {e}") from e
        text = raw.decode("utf-8", errors="replace")
        try:
            return status, json.loads(text) if text else None
        except ValueError:
            return status, {"raw": text[:500]}

    def _audit(
        self,
        user_id: str,
        action: str,
        tenant_ids: Any,
        response: Dict[str, Any],
        ok: bool,
        start: float,
    ) -> int:
        duration_ms = int((time.monotonic() - start) * 1000)
        self.store.insert_platform_audit_log(
            user_id=user_id,
            action_type=AUDIT_ACTION_TYPE,
            entity_type="scheduler",
            entity_id=action,
            description=f"Admin triggered scheduler action: {action}",
            request_snapshot={"action": action, "tenant_ids": tenant_ids},
            response_snapshot=response,
            success=ok,
            duration_ms=duration_ms,
        )
        return duration_ms

    def handle(self, authorization: Optional[str], body: Any) -> Dict[str, Any]:
        start = time.monotonic()
        user_id = self.authorize(authorization)

        body = body if isinstance(body, dict) else {}
        action = body.get("action")
        tenant_ids = body.get("tenant_ids")
        if not action:
            raise proof_error(PG_E_BAD_REQUEST, "Missing required field: action", http_status=400)
        if action not in ALLOWED_ACTIONS:
            raise proof_error(PG_E_BAD_REQUEST, f"Invalid action. Allowed: {', '.join(ALLOWED_ACTIONS)}", http_status=400)

        if not self.secret:
            logger.error("admin-run-scheduler: INTERNAL_SCHEDULER_SECRET not configured")
            raise proof_error(
                PG_E_SCHEDULER_NOT_CONFIGURED,
                "Server configuration error: scheduler secret not set",
                http_status=500,
            )
        if not self.scheduler_url:
            raise proof_error(
                PG_E_SCHEDULER_NOT_CONFIGURED,
                "Server configuration error: scheduler URL not set",
                http_status=500,
            )

        forward: Dict[str, Any] = {"action": action}
        if isinstance(tenant_ids, list):
            forward["tenant_ids"] = tenant_ids

        logger.info("admin-run-scheduler: calling scheduler action=%s user=%s", action, user_id)
        try:
            status, result = self._forward(forward)
        except BackendError as e:
            logger.error("admin-run-scheduler: %s", e.message)
            self._audit(user_id, action, tenant_ids, {"status": None, "error": e.message}, False, start)
            raise
        ok = 200 <= status < 300
        duration_ms = self._audit(user_id, action, tenant_ids, {"status": status, "result": result}, ok, start)

        if not ok:
            logger.error("admin-run-scheduler: scheduler call failed status=%d", status)
            raise proof_error(
                PG_E_SCHEDULER_UPSTREAM,
                "Scheduler call failed",
                http_status=status,
                scheduler_error=result,
            )

        return {
            "success": True,
            "action": action,
            "result": result,
            "triggered_by": user_id,
            "duration_ms": duration_ms,
        }
