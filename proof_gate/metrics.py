"""Prometheus metrics for Proof Gate.

Labels stay low-cardinality: no tenant ids, user ids or payload values.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

logger = logging.getLogger("proof_gate.metrics")

HTTP_REQUESTS_TOTAL = Counter(
    "proof_gate_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "proof_gate_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
PROOF_RUNS_TOTAL = Counter(
    "proof_gate_runs_total",
    "Proof Gate runs by verdict",
    ["verdict"],
)
STEP_OUTCOMES_TOTAL = Counter(
    "proof_gate_step_outcomes_total",
    "Proof Gate step outcomes",
    ["step", "status"],
)
WEBHOOKS_TOTAL = Counter(
    "proof_gate_webhooks_total",
    "Lead webhook requests by outcome",
    ["outcome"],
)
SCHEDULER_TRIGGERS_TOTAL = Counter(
    "proof_gate_scheduler_triggers_total",
    "Admin scheduler triggers",
    ["action", "outcome"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "proof_gate_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)


def record_proof_run(verdict: str) -> None:
    PROOF_RUNS_TOTAL.labels(verdict=str(verdict)).inc()


def record_step_outcome(step: str, status: str) -> None:
    STEP_OUTCOMES_TOTAL.labels(step=str(step), status=str(status)).inc()


def record_webhook(outcome: str) -> None:
    WEBHOOKS_TOTAL.labels(outcome=str(outcome)).inc()


def record_scheduler_trigger(action: str, outcome: str) -> None:
    SCHEDULER_TRIGGERS_TOTAL.labels(action=str(action), outcome=str(outcome)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach request metrics middleware and a /metrics endpoint.

    authorize: callable(request) -> bool. When it returns False, /metrics is 403.
    """

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            try:
                HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
                HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)
            except ValueError as e:
                logger.debug("metrics label error: %s", e)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return PlainTextResponse("FORBIDDEN", status_code=403)
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
