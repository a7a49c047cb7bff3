"""HTTP surface for the platform functions.

Endpoints:
    POST /functions/v1/lead-webhook          lead ingestion (tenant header or API key)
    POST /functions/v1/admin-run-scheduler   admin-only scheduler proxy
    POST /functions/v1/proof-sign            sign / verify a proof token + pack hash
    POST /functions/v1/<preflight>           dependency preflight report
    POST /rest/v1/rpc/qa_dependency_check    DB doctor remote procedure
    GET  /v1/health, /v1/stats, /metrics
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .auth import SessionAuth
from .backend import LocalFunctionsClient
from .config import GateConfig
from .crypto import Ed25519KeyPair, _iso_utc, load_signing_key_from_env
from .errors import (
    PG_E_AUTH_INVALID,
    PG_E_AUTH_REQUIRED,
    PG_E_BAD_REQUEST,
    PG_E_RATE_LIMITED,
    PG_E_SIGNING_UNAVAILABLE,
    ProofGateError,
    proof_error,
)
from .metrics import instrument_fastapi, record_rate_limited, record_scheduler_trigger, record_webhook
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiter
from .scheduler_proxy import SchedulerProxy
from .signing import FileEd25519Signer, ProofSignature, sign_proof, verify_proof_signature
from .store import PlatformStore, hash_api_key
from .webhook import LeadWebhookService

logger = logging.getLogger("proof_gate.server")


class ProofSignRequest(BaseModel):
    action: str = "sign"
    proof_token: Optional[str] = None
    pack_hash: Optional[str] = None
    signature: Optional[str] = None
    key_id: Optional[str] = None
    signed_at: Optional[str] = None


class PreflightRequest(BaseModel):
    mode: str = "preflight"


class HealthResponse(BaseModel):
    status: str
    version: str
    signing_available: bool
    scheduler_configured: bool


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    name = name.lower()
    for k, v in headers.items():
        if k.lower() == name:
            return v
    return None


class PlatformGateway:
    """Holds the store and services behind the HTTP functions."""

    def __init__(
        self,
        config: Optional[GateConfig] = None,
        *,
        store: Optional[PlatformStore] = None,
        auth: Optional[SessionAuth] = None,
        signing_key: Optional[Ed25519KeyPair] = None,
    ):
        self.config = config or GateConfig.from_env()
        self.store = store or PlatformStore(self.config.db_path)
        self.auth = auth or SessionAuth.load_from_env()
        self.webhooks = LeadWebhookService(self.store)
        self.scheduler = SchedulerProxy(
            self.store,
            self.auth,
            scheduler_url=self.config.scheduler_url,
            secret=self.config.scheduler_secret,
            timeout_seconds=self.config.http_timeout_seconds,
        )
        if signing_key is None:
            signing_key = load_signing_key_from_env(
                self.config.signing_key_id, allow_ephemeral=self.config.allow_ephemeral_signing_key
            )
        self.signing_key = signing_key
        try:
            self.webhook_limiter: Optional[RateLimiter] = RateLimiter.from_spec(self.config.webhook_rate_limit)
        except ValueError as e:
            logger.warning("Invalid PROOF_GATE_RATE_LIMIT_WEBHOOK=%r: %s (disabled)", self.config.webhook_rate_limit, e)
            self.webhook_limiter = None

    # ---- lead webhook ----

    def _webhook_rate_key(self, headers: Mapping[str, str]) -> str:
        tenant = (_header(headers, "x-tenant-id") or "").strip()
        if tenant:
            return f"t:{tenant}"
        api_key = (_header(headers, "x-api-key") or "").strip()
        if api_key:
            return f"k:{hash_api_key(api_key)}"
        return "_anon"

    def handle_webhook(self, headers: Mapping[str, str], payload: Any) -> Dict[str, Any]:
        if self.webhook_limiter is not None and not self.webhook_limiter.allow(self._webhook_rate_key(headers)):
            record_rate_limited("lead-webhook")
            OPS_STATS.record_rate_limited("lead-webhook")
            raise proof_error(PG_E_RATE_LIMITED, "Rate limit exceeded", http_status=429, retryable=True)
        try:
            body = self.webhooks.handle(headers, payload)
        except ProofGateError as e:
            outcome = "error" if e.http_status >= 500 else "rejected"
            record_webhook(outcome)
            OPS_STATS.record_webhook(outcome)
            raise
        outcome = "duplicate" if body.get("status") == "duplicate" else "created"
        record_webhook(outcome)
        OPS_STATS.record_webhook(outcome)
        return body

    # ---- scheduler ----

    def handle_scheduler(self, headers: Mapping[str, str], body: Any) -> Dict[str, Any]:
        action = str(body.get("action") or "") if isinstance(body, dict) else ""
        try:
            result = self.scheduler.handle(_header(headers, "authorization"), body)
        except ProofGateError as e:
            outcome = "denied" if e.http_status in (401, 403) else "error"
            record_scheduler_trigger(action or "none", outcome)
            OPS_STATS.record_scheduler_trigger(action or "none", outcome)
            raise
        record_scheduler_trigger(action, "ok")
        OPS_STATS.record_scheduler_trigger(action, "ok")
        return result

    # ---- proof signing ----

    def handle_proof_sign(self, headers: Mapping[str, str], body: Any) -> Dict[str, Any]:
        authorization = _header(headers, "authorization")
        if not (authorization or "").strip():
            raise proof_error(PG_E_AUTH_REQUIRED, "Missing authorization header", http_status=401)
        user_id, err = self.auth.resolve_identity(authorization)
        if err or not user_id:
            raise proof_error(PG_E_AUTH_INVALID, "Authentication failed", http_status=401)

        if isinstance(body, ProofSignRequest):
            req = body
        else:
            try:
                req = ProofSignRequest(**(body if isinstance(body, dict) else {}))
            except ValidationError as e:
                raise proof_error(PG_E_BAD_REQUEST, f"Invalid request: {e.error_count()} error(s)", http_status=400)
        if not req.proof_token or not req.pack_hash:
            raise proof_error(PG_E_BAD_REQUEST, "proof_token and pack_hash are required", http_status=400)
        if self.signing_key is None:
            OPS_STATS.record_signer_unavailable()
            raise proof_error(PG_E_SIGNING_UNAVAILABLE, "Signing key not configured", http_status=503)

        if req.action == "sign":
            sig = sign_proof(FileEd25519Signer(self.signing_key), req.proof_token, req.pack_hash)
            OPS_STATS.record_signature()
            return {**sig.to_dict(), "public_key": self.signing_key.public_key_hex}
        if req.action == "verify":
            if not req.signature:
                raise proof_error(PG_E_BAD_REQUEST, "signature is required for verify", http_status=400)
            candidate = ProofSignature(
                signature=req.signature,
                signed_at=req.signed_at or "",
                key_id=req.key_id or self.signing_key.key_id,
            )
            valid = candidate.key_id == self.signing_key.key_id and verify_proof_signature(
                self.signing_key, req.proof_token, req.pack_hash, candidate
            )
            return {"valid": bool(valid), "key_id": self.signing_key.key_id}
        raise proof_error(PG_E_BAD_REQUEST, f"Unknown action: {req.action}", http_status=400)

    # ---- preflight / RPC ----

    def handle_preflight(self, headers: Mapping[str, str], body: Any) -> Dict[str, Any]:
        mode = body.get("mode") if isinstance(body, dict) else getattr(body, "mode", None)
        if mode != "preflight":
            raise proof_error(PG_E_BAD_REQUEST, "Unsupported mode", http_status=400)
        report = self.store.qa_dependency_check()
        report["checked_at"] = _iso_utc()
        return {"report": report}

    def functions_client(self) -> LocalFunctionsClient:
        """In-process client over the same handlers the HTTP routes use."""
        return LocalFunctionsClient({
            "lead-webhook": self.handle_webhook,
            "admin-run-scheduler": self.handle_scheduler,
            "proof-sign": self.handle_proof_sign,
            self.config.preflight_function: self.handle_preflight,
        })


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(gateway: Optional[PlatformGateway] = None) -> FastAPI:
    """Create the FastAPI application."""
    from . import __version__

    if gateway is None:
        gateway = PlatformGateway()
    config = gateway.config

    app = FastAPI(
        title="Proof Gate",
        description="Platform functions and diagnostics",
        version=__version__,
    )
    app.state.gateway = gateway

    @app.exception_handler(ProofGateError)
    async def _proof_gate_error_handler(request: Request, exc: ProofGateError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_response())

    stats_require_auth = config.stats_require_auth if config.stats_require_auth is not None else config.is_prod

    def _authorize_stats(req: Request) -> bool:
        if not stats_require_auth:
            return True
        # Required but no token configured: fail closed.
        if not config.stats_token:
            return False
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == config.stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == config.stats_token

    if config.metrics_enabled:
        instrument_fastapi(app, authorize=_authorize_stats)

    max_request_bytes = config.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"error": "Bad Content-Length", "code": PG_E_BAD_REQUEST})
            if too_large:
                return JSONResponse(status_code=413, content={"error": "Request too large", "code": PG_E_BAD_REQUEST})
        return await call_next(req)

    @app.post("/functions/v1/lead-webhook")
    async def lead_webhook(request: Request):
        payload = await _json_body(request)
        return await run_in_threadpool(gateway.handle_webhook, dict(request.headers), payload)

    @app.post("/functions/v1/admin-run-scheduler")
    async def admin_run_scheduler(request: Request):
        body = await _json_body(request)
        return await run_in_threadpool(gateway.handle_scheduler, dict(request.headers), body)

    @app.post("/functions/v1/proof-sign")
    async def proof_sign(body: ProofSignRequest, authorization: Optional[str] = Header(None)):
        headers = {"authorization": authorization} if authorization else {}
        return await run_in_threadpool(gateway.handle_proof_sign, headers, body)

    @app.post(f"/functions/v1/{config.preflight_function}")
    async def preflight(body: PreflightRequest):
        return await run_in_threadpool(gateway.handle_preflight, {}, body)

    @app.post("/rest/v1/rpc/qa_dependency_check")
    async def rpc_qa_dependency_check():
        return await run_in_threadpool(gateway.store.qa_dependency_check)

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if not _authorize_stats(http_request):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        return OPS_STATS.snapshot(extra={"env": config.env})

    @app.get("/v1/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            version=__version__,
            signing_available=gateway.signing_key is not None,
            scheduler_configured=bool(config.scheduler_url and config.scheduler_secret),
        )

    return app


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    import uvicorn

    uvicorn.run("proof_gate.server:create_app", factory=True, host=host, port=port, reload=reload)


def main():
    """
    Entry point for proof-gate-server.

    Usage:
        proof-gate-server                    # 0.0.0.0:8000
        proof-gate-server --port 9000
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Proof Gate platform functions server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    PROOF_GATE_DB_PATH                  SQLite platform store (default: proof_gate.db)
    PROOF_GATE_SESSION_TOKENS_JSON      Bearer token -> user id map
    PROOF_GATE_SCHEDULER_URL            Upstream scheduler endpoint
    INTERNAL_SCHEDULER_SECRET           Secret forwarded to the scheduler
    PROOF_GATE_SIGNING_KEY              Ed25519 seed (hex) for proof-sign
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    args = parser.parse_args()

    print(f"Starting Proof Gate server on {args.host}:{args.port}")
    serve(args.host, args.port, args.reload)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
