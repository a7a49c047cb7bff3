"""In-memory operational counters served at /v1/stats.

Counters reset on process restart. They are a quick look at traffic, not
evidence; the Evidence Pack and the platform audit log are the records.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class _Counters:
    webhooks_total: int = 0
    webhooks_by_outcome: Dict[str, int] = field(default_factory=dict)  # created/duplicate/error/rejected

    scheduler_triggers_total: int = 0
    scheduler_by_action: Dict[str, int] = field(default_factory=dict)
    scheduler_by_outcome: Dict[str, int] = field(default_factory=dict)

    proof_runs_total: int = 0
    proof_runs_by_verdict: Dict[str, int] = field(default_factory=dict)  # pass/fail/aborted

    signatures_total: int = 0
    signer_unavailable_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_webhook(self, outcome: str) -> None:
        with self._lock:
            self._c.webhooks_total += 1
            self._inc_map(self._c.webhooks_by_outcome, outcome or "unknown")

    def record_scheduler_trigger(self, action: str, outcome: str) -> None:
        with self._lock:
            self._c.scheduler_triggers_total += 1
            self._inc_map(self._c.scheduler_by_action, action or "unknown")
            self._inc_map(self._c.scheduler_by_outcome, outcome or "unknown")

    def record_proof_run(self, verdict: str) -> None:
        with self._lock:
            self._c.proof_runs_total += 1
            self._inc_map(self._c.proof_runs_by_verdict, verdict or "unknown")

    def record_signature(self) -> None:
        with self._lock:
            self._c.signatures_total += 1

    def record_signer_unavailable(self) -> None:
        with self._lock:
            self._c.signer_unavailable_total += 1

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def reset(self) -> None:
        with self._lock:
            self._c = _Counters()
            self._start_monotonic = time.monotonic()

    def snapshot(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "webhooks_total": c.webhooks_total,
                "webhooks_by_outcome": dict(c.webhooks_by_outcome),
                "scheduler_triggers_total": c.scheduler_triggers_total,
                "scheduler_by_action": dict(c.scheduler_by_action),
                "scheduler_by_outcome": dict(c.scheduler_by_outcome),
                "proof_runs_total": c.proof_runs_total,
                "proof_runs_by_verdict": dict(c.proof_runs_by_verdict),
                "signatures_total": c.signatures_total,
                "signer_unavailable_total": c.signer_unavailable_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
