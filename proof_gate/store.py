"""SQLite platform store.

Holds the rows the HTTP functions and the QA harness work against: tenants,
integrations, inbound webhooks, leads, suppression entries, activity and
platform audit logs, user roles and CEO alerts.

Every tenant-scoped statement is parameterized; no caller-supplied value is
ever interpolated into SQL text. Unique violations surface as
`DuplicateKeyError` (Postgres code 23505) so callers written against the
hosted database behave the same here.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .crypto import _iso_utc
from .errors import DuplicateKeyError, PG_E_STORAGE, proof_error

logger = logging.getLogger("proof_gate.store")

QA_ALERT_LIMIT = 200


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _new_id() -> str:
    return str(uuid.uuid4())


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class PlatformStore:
    """
    Persistent platform storage.

    Uses WAL mode and enforces foreign keys on every connection.
    """

    def __init__(self, db_path: str = "proof_gate.db", *, connect_timeout_seconds: float = 5.0):
        self.db_path = db_path
        self.connect_timeout_seconds = connect_timeout_seconds
        self._init_db()

    @contextmanager
    def _db(self):
        conn = sqlite3.connect(self.db_path, timeout=self.connect_timeout_seconds)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        except sqlite3.IntegrityError as e:
            msg = str(e)
            if "UNIQUE" in msg.upper():
                raise DuplicateKeyError(msg, constraint=msg.split(":", 1)[-1].strip()) from e
            raise proof_error(PG_E_STORAGE, msg, http_status=400) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS tenants (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS tenant_integrations (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL REFERENCES tenants(id),
                provider TEXT NOT NULL,
                api_key_hash TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tenant_integrations_tenant_id ON tenant_integrations (tenant_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tenant_integrations_key ON tenant_integrations (api_key_hash)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS inbound_webhooks (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL REFERENCES tenants(id),
                source TEXT NOT NULL,
                headers_json TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                dedupe_key TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                received_at TEXT NOT NULL,
                processed_at TEXT,
                UNIQUE (tenant_id, dedupe_key)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS leads (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL REFERENCES tenants(id),
                inbound_webhook_id TEXT REFERENCES inbound_webhooks(id),
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                source TEXT NOT NULL,
                status TEXT NOT NULL,
                lead_temperature TEXT NOT NULL,
                do_not_call INTEGER NOT NULL DEFAULT 0,
                metadata_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_leads_tenant_id ON leads (tenant_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_leads_inbound_webhook_id ON leads (inbound_webhook_id)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS suppression_list (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL REFERENCES tenants(id),
                phone TEXT,
                email TEXT,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_suppression_list_tenant_id ON suppression_list (tenant_id)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS activity_log (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL REFERENCES tenants(id),
                action_type TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                description TEXT NOT NULL,
                metadata_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_log_tenant_id ON activity_log (tenant_id)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS user_roles (
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, role)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS platform_audit_log (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                action_type TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                description TEXT NOT NULL,
                request_snapshot TEXT,
                response_snapshot TEXT,
                success INTEGER NOT NULL,
                duration_ms INTEGER,
                timestamp TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS ceo_alerts (
                id TEXT PRIMARY KEY,
                tenant_id TEXT REFERENCES tenants(id),
                alert_type TEXT NOT NULL,
                title TEXT NOT NULL,
                acknowledged_at TEXT,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_ceo_alerts_tenant_id ON ceo_alerts (tenant_id)")

    # ---------------------------
    # Tenants / integrations
    # ---------------------------

    def create_tenant(self, name: str, tenant_id: Optional[str] = None) -> str:
        tid = tenant_id or _new_id()
        with self._db() as conn:
            conn.execute("INSERT INTO tenants (id, name, created_at) VALUES (?, ?, ?)", (tid, name, _iso_utc()))
        return tid

    def tenant_exists(self, tenant_id: str) -> bool:
        with self._db() as conn:
            row = conn.execute("SELECT 1 FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
        return row is not None

    def list_tenant_ids(self, limit: int = 5) -> List[str]:
        with self._db() as conn:
            rows = conn.execute("SELECT id FROM tenants ORDER BY created_at, id LIMIT ?", (int(limit),)).fetchall()
        return [r["id"] for r in rows]

    def add_integration(self, tenant_id: str, api_key: str, *, provider: str = "generic", is_active: bool = True) -> str:
        iid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO tenant_integrations (id, tenant_id, provider, api_key_hash, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (iid, tenant_id, provider, hash_api_key(api_key), 1 if is_active else 0, _iso_utc()),
            )
        return iid

    def find_tenant_by_api_key_hash(self, api_key_hash: str, *, provider: str = "generic") -> Optional[str]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT tenant_id FROM tenant_integrations "
                "WHERE api_key_hash = ? AND provider = ? AND is_active = 1 LIMIT 1",
                (api_key_hash, provider),
            ).fetchone()
        return row["tenant_id"] if row else None

    # ---------------------------
    # Webhooks / leads
    # ---------------------------

    def insert_inbound_webhook(
        self,
        tenant_id: str,
        source: str,
        headers: Dict[str, str],
        payload: Any,
        dedupe_key: str,
    ) -> str:
        """Insert the raw webhook. Raises DuplicateKeyError on a repeated dedupe key."""
        wid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO inbound_webhooks "
                "(id, tenant_id, source, headers_json, payload_json, dedupe_key, status, received_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)",
                (wid, tenant_id, source, json.dumps(headers, sort_keys=True), json.dumps(payload), dedupe_key, _iso_utc()),
            )
        return wid

    def update_webhook_status(self, webhook_id: str, status: str, error: Optional[str] = None) -> None:
        with self._db() as conn:
            conn.execute(
                "UPDATE inbound_webhooks SET status = ?, error = ?, processed_at = ? WHERE id = ?",
                (status, error, _iso_utc(), webhook_id),
            )

    def get_webhook(self, webhook_id: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM inbound_webhooks WHERE id = ?", (webhook_id,)).fetchone()
        return dict(row) if row else None

    def add_suppression(self, tenant_id: str, *, phone: Optional[str] = None, email: Optional[str] = None) -> str:
        sid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO suppression_list (id, tenant_id, phone, email, created_at) VALUES (?, ?, ?, ?, ?)",
                (sid, tenant_id, phone, email, _iso_utc()),
            )
        return sid

    def is_suppressed(self, tenant_id: str, *, phone: Optional[str], email: Optional[str]) -> bool:
        if not phone and not email:
            return False
        with self._db() as conn:
            row = conn.execute(
                "SELECT 1 FROM suppression_list WHERE tenant_id = ? "
                "AND ((? IS NOT NULL AND phone = ?) OR (? IS NOT NULL AND email = ?)) LIMIT 1",
                (tenant_id, phone, phone, email, email),
            ).fetchone()
        return row is not None

    def insert_lead(
        self,
        tenant_id: str,
        *,
        name: str,
        email: Optional[str],
        phone: Optional[str],
        source: str,
        do_not_call: bool,
        inbound_webhook_id: Optional[str],
        metadata: Dict[str, Any],
        status: str = "new",
        lead_temperature: str = "warm",
    ) -> str:
        lid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO leads (id, tenant_id, inbound_webhook_id, name, email, phone, source, status, "
                "lead_temperature, do_not_call, metadata_json, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    lid, tenant_id, inbound_webhook_id, name, email, phone, source, status,
                    lead_temperature, 1 if do_not_call else 0, json.dumps(metadata), _iso_utc(),
                ),
            )
        return lid

    def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,)).fetchone()
        if row is None:
            return None
        lead = dict(row)
        lead["do_not_call"] = bool(lead["do_not_call"])
        lead["metadata"] = json.loads(lead.pop("metadata_json") or "{}")
        return lead

    def count_leads(self, tenant_id: str) -> int:
        with self._db() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM leads WHERE tenant_id = ?", (tenant_id,)).fetchone()
        return int(row["n"])

    def find_leads_by_nonce(self, tenant_id: str, nonce: str) -> List[Dict[str, Any]]:
        """Leads whose raw payload carries `qa_nonce == nonce`."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT id, metadata_json FROM leads WHERE tenant_id = ? ORDER BY created_at DESC LIMIT 500",
                (tenant_id,),
            ).fetchall()
        found = []
        for r in rows:
            meta = json.loads(r["metadata_json"] or "{}")
            raw = meta.get("raw_payload") if isinstance(meta, dict) else None
            if isinstance(raw, dict) and raw.get("qa_nonce") == nonce:
                found.append({"id": r["id"], "metadata": meta})
        return found

    def log_activity(
        self,
        tenant_id: str,
        action_type: str,
        entity_type: str,
        entity_id: Optional[str],
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        aid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO activity_log (id, tenant_id, action_type, entity_type, entity_id, description, "
                "metadata_json, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (aid, tenant_id, action_type, entity_type, entity_id, description, json.dumps(metadata or {}), _iso_utc()),
            )
        return aid

    def list_activity(self, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_log WHERE tenant_id = ? ORDER BY created_at DESC LIMIT ?",
                (tenant_id, int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    # ---------------------------
    # Roles / platform audit
    # ---------------------------

    def set_user_role(self, user_id: str, role: str) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_roles (user_id, role, created_at) VALUES (?, ?, ?)",
                (user_id, role, _iso_utc()),
            )

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._db() as conn:
            rows = conn.execute("SELECT role FROM user_roles WHERE user_id = ? ORDER BY role", (user_id,)).fetchall()
        return [r["role"] for r in rows]

    def has_role(self, user_id: str, role: str) -> bool:
        with self._db() as conn:
            row = conn.execute(
                "SELECT 1 FROM user_roles WHERE user_id = ? AND role = ?", (user_id, role)
            ).fetchone()
        return row is not None

    def insert_platform_audit_log(
        self,
        *,
        user_id: Optional[str],
        action_type: str,
        entity_type: str,
        entity_id: Optional[str],
        description: str,
        request_snapshot: Any = None,
        response_snapshot: Any = None,
        success: bool,
        duration_ms: Optional[int] = None,
    ) -> str:
        aid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO platform_audit_log (id, user_id, action_type, entity_type, entity_id, description, "
                "request_snapshot, response_snapshot, success, duration_ms, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    aid, user_id, action_type, entity_type, entity_id, description,
                    json.dumps(request_snapshot), json.dumps(response_snapshot),
                    1 if success else 0, duration_ms, _iso_utc(),
                ),
            )
        return aid

    def recent_platform_audit_log(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM platform_audit_log ORDER BY timestamp DESC LIMIT ?", (int(limit),)
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["success"] = bool(d["success"])
            for k in ("request_snapshot", "response_snapshot"):
                d[k] = json.loads(d[k]) if d[k] else None
            out.append(d)
        return out

    # ---------------------------
    # Tenant-scoped alerts (QA isolation surface)
    # ---------------------------

    def insert_alert(self, tenant_id: Optional[str], alert_type: str, title: str) -> str:
        aid = _new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO ceo_alerts (id, tenant_id, alert_type, title, created_at) VALUES (?, ?, ?, ?, ?)",
                (aid, tenant_id, alert_type, title, _iso_utc()),
            )
        return aid

    def select_alerts_for_tenant(self, tenant_id: str, *, include_global: bool = True, limit: int = QA_ALERT_LIMIT) -> List[Dict[str, Any]]:
        """Rows visible to one tenant: its own, plus global (NULL tenant) rows."""
        sql = "SELECT id, tenant_id, alert_type, title, acknowledged_at FROM ceo_alerts WHERE tenant_id = ?"
        if include_global:
            sql += " OR tenant_id IS NULL"
        sql += " ORDER BY created_at DESC LIMIT ?"
        with self._db() as conn:
            rows = conn.execute(sql, (tenant_id, int(limit))).fetchall()
        return [dict(r) for r in rows]

    def acknowledge_alerts(self, acting_tenant_id: str, alert_ids: Iterable[str]) -> int:
        """Acknowledge alerts owned by the acting tenant. Returns rows updated."""
        ids = [str(a) for a in alert_ids]
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._db() as conn:
            cur = conn.execute(
                f"UPDATE ceo_alerts SET acknowledged_at = ? WHERE tenant_id = ? AND id IN ({placeholders})",
                (_iso_utc(), acting_tenant_id, *ids),
            )
            return int(cur.rowcount)

    # ---------------------------
    # DB doctor
    # ---------------------------

    def qa_dependency_check(self) -> Dict[str, Any]:
        """Report foreign keys with no covering index.

        An index covers a foreign key when the key's columns are a prefix of
        the index's columns.
        """
        suspects: List[Dict[str, Any]] = []
        with self._db() as conn:
            tables = [
                r["name"]
                for r in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
                ).fetchall()
            ]
            for table in tables:
                qt = _quote_ident(table)
                fks: Dict[int, List[Tuple[int, str]]] = {}
                for fk in conn.execute(f"PRAGMA foreign_key_list({qt})").fetchall():
                    fks.setdefault(int(fk["id"]), []).append((int(fk["seq"]), fk["from"]))
                index_cols: List[List[str]] = []
                for idx in conn.execute(f"PRAGMA index_list({qt})").fetchall():
                    cols = conn.execute(f"PRAGMA index_info({_quote_ident(idx['name'])})").fetchall()
                    index_cols.append([c["name"] for c in sorted(cols, key=lambda c: c["seqno"])])
                for _, parts in sorted(fks.items()):
                    cols = [name for _, name in sorted(parts)]
                    covered = any(ic[: len(cols)] == cols for ic in index_cols)
                    if not covered:
                        suspects.append({
                            "object": f"{table}.{','.join(cols)}",
                            "type": "unindexed_foreign_key",
                            "fix_sql": (
                                f"CREATE INDEX IF NOT EXISTS {_quote_ident('idx_' + table + '_' + '_'.join(cols))} "
                                f"ON {qt} ({', '.join(_quote_ident(c) for c in cols)});"
                            ),
                        })
        return {
            "ok": not suspects,
            "suspect_count": len(suspects),
            "suspects": suspects,
            "checked_tables": len(tables),
        }
