"""Environment-driven configuration.

Every knob is read from the process environment. Numeric values that fail to
parse fall back to their defaults; JSON maps that guard access are handled by
their owners (see `auth.SessionAuth`) and fail closed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except Exception:
        return default


def _get_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GateConfig:
    """Runtime configuration for the orchestrator, CLI and HTTP service."""

    db_path: str = "proof_gate.db"
    state_dir: str = ".proof_gate"

    backend_url: str = ""
    backend_key: str = ""
    access_token: str = ""
    preflight_function: str = "edge-preflight"
    http_timeout_seconds: float = 10.0

    signing_mode: str = "off"
    signing_key_id: str = "proof-gate-signer"
    allow_ephemeral_signing_key: bool = False

    scheduler_url: str = ""
    scheduler_secret: Optional[str] = None

    webhook_rate_limit: str = "120/m"
    max_request_bytes: int = 1048576

    env: str = "dev"
    stats_token: str = ""
    stats_require_auth: Optional[bool] = None
    metrics_enabled: bool = True

    app_version: str = ""
    build_timestamp: str = ""
    commit_sha: str = ""

    @property
    def is_prod(self) -> bool:
        return self.env in ("prod", "production")

    @property
    def backend_configured(self) -> bool:
        return bool(self.backend_url)

    @classmethod
    def from_env(cls) -> "GateConfig":
        signing_mode = _get_str("PROOF_GATE_SIGNING_MODE", "off").lower()
        if signing_mode not in ("off", "local", "remote"):
            signing_mode = "off"

        timeout = _get_float("PROOF_GATE_HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds)
        if timeout <= 0:
            timeout = cls.http_timeout_seconds

        max_bytes = _get_int("PROOF_GATE_MAX_REQUEST_BYTES", cls.max_request_bytes)
        if max_bytes <= 0:
            max_bytes = cls.max_request_bytes

        raw_require = os.getenv("PROOF_GATE_STATS_REQUIRE_AUTH")
        stats_require: Optional[bool] = None
        if raw_require is not None:
            stats_require = raw_require.strip().lower() in ("1", "true", "yes", "on")

        secret = os.getenv("INTERNAL_SCHEDULER_SECRET")

        return cls(
            db_path=_get_str("PROOF_GATE_DB_PATH", cls.db_path),
            state_dir=_get_str("PROOF_GATE_STATE_DIR", cls.state_dir),
            backend_url=_get_str("PROOF_GATE_BACKEND_URL").rstrip("/"),
            backend_key=_get_str("PROOF_GATE_BACKEND_KEY"),
            access_token=_get_str("PROOF_GATE_ACCESS_TOKEN"),
            preflight_function=_get_str("PROOF_GATE_PREFLIGHT_FUNCTION", cls.preflight_function),
            http_timeout_seconds=timeout,
            signing_mode=signing_mode,
            signing_key_id=_get_str("PROOF_GATE_SIGNING_KEY_ID", cls.signing_key_id),
            allow_ephemeral_signing_key=_get_bool("PROOF_GATE_ALLOW_EPHEMERAL_SIGNING_KEY", False),
            scheduler_url=_get_str("PROOF_GATE_SCHEDULER_URL"),
            scheduler_secret=secret.strip() if secret and secret.strip() else None,
            webhook_rate_limit=_get_str("PROOF_GATE_RATE_LIMIT_WEBHOOK", cls.webhook_rate_limit),
            max_request_bytes=max_bytes,
            env=_get_str("PROOF_GATE_ENV", "dev").lower(),
            stats_token=_get_str("PROOF_GATE_STATS_TOKEN"),
            stats_require_auth=stats_require,
            metrics_enabled=_get_bool("PROOF_GATE_METRICS_ENABLED", True),
            app_version=_get_str("PROOF_GATE_APP_VERSION"),
            build_timestamp=_get_str("PROOF_GATE_BUILD_TIMESTAMP"),
            commit_sha=_get_str("PROOF_GATE_COMMIT_SHA"),
        )
